"""Conflict resolution strategies.

Each conflict type accepts a fixed set of strategies (see
ALLOWED_RESOLUTIONS). "auto" maps to a concrete strategy per conflict type
and has no policy for delete-update conflicts, which always need a person
to choose a side.
"""

import logging
from typing import Any

from .errors import ConflictPolicyError
from .models import (
    ALLOWED_RESOLUTIONS,
    META_FIELDS,
    ConflictType,
    ReconciledEntity,
    Resolution,
    SyncConflict,
)

logger = logging.getLogger(__name__)

# Concrete strategy chosen by "auto"; missing types require manual resolution
AUTO_POLICY: dict[ConflictType, Resolution] = {
    ConflictType.CREATE_CREATE: Resolution.REMOTE_WINS,
    ConflictType.CONCURRENT_UPDATE: Resolution.MERGE,
}


def merge_versions(conflict: SyncConflict) -> dict[str, Any]:
    """Field-level union of both versions.

    The remote record is the base and every local change is laid over it.
    Conflicting fields, changed on both sides, take the value from the side
    with the later timestamp; ties go to the remote.
    """
    local = conflict.local_version or {}
    merged = dict(conflict.remote_version or {})
    contested = set(conflict.conflicting_fields)

    local_later = conflict.local_timestamp is not None and (
        conflict.remote_timestamp is None
        or conflict.local_timestamp > conflict.remote_timestamp
    )

    for name, value in local.items():
        if name in META_FIELDS:
            continue
        if name not in contested or local_later:
            merged[name] = value

    return merged


class ConflictResolver:
    """Produces a reconciled entity state from a conflict and a strategy."""

    def concrete_strategy(
        self, conflict: SyncConflict, strategy: Resolution | str
    ) -> Resolution:
        """Validate a strategy for the conflict and expand "auto".

        Raises:
            ConflictPolicyError: If the strategy is not allowed for the
                conflict type.
        """
        try:
            strategy = Resolution(strategy)
        except ValueError:
            raise ConflictPolicyError(f"Unknown resolution strategy: {strategy!r}")

        if strategy == Resolution.AUTO:
            concrete = AUTO_POLICY.get(conflict.conflict_type)
            if concrete is None:
                raise ConflictPolicyError(
                    f"No automatic policy for {conflict.conflict_type.value} "
                    f"conflicts; choose local_wins or remote_wins"
                )
            return concrete

        if strategy not in ALLOWED_RESOLUTIONS[conflict.conflict_type]:
            raise ConflictPolicyError(
                f"Resolution {strategy.value} is not allowed for "
                f"{conflict.conflict_type.value} conflicts"
            )
        return strategy

    def resolve(
        self, conflict: SyncConflict, strategy: Resolution | str
    ) -> ReconciledEntity:
        """Reconcile a conflict.

        Resolving an already-resolved conflict with the strategy it was
        resolved with returns the stored result.

        Args:
            conflict: Conflict to resolve.
            strategy: One of merge, local_wins, remote_wins, auto.

        Returns:
            The reconciled entity; data is None when the outcome is a deletion.

        Raises:
            ConflictPolicyError: If the strategy is invalid for the conflict,
                or the conflict was already resolved with another strategy.
        """
        concrete = self.concrete_strategy(conflict, strategy)

        if conflict.is_resolved:
            if conflict.resolution != Resolution(strategy):
                raise ConflictPolicyError(
                    f"Conflict {conflict.id} already resolved with "
                    f"{conflict.resolution.value if conflict.resolution else 'unknown'}"
                )
            return self._reconciled(conflict, conflict.resolved_version, concrete)

        if concrete == Resolution.LOCAL_WINS:
            data = conflict.local_version
        elif concrete == Resolution.REMOTE_WINS:
            data = conflict.remote_version
        else:
            data = merge_versions(conflict)

        logger.debug(
            f"Resolved {conflict.conflict_type.value} conflict {conflict.id} "
            f"with {concrete.value}"
        )
        return self._reconciled(
            conflict, dict(data) if data is not None else None, concrete
        )

    @staticmethod
    def _reconciled(
        conflict: SyncConflict,
        data: dict[str, Any] | None,
        strategy: Resolution,
    ) -> ReconciledEntity:
        return ReconciledEntity(
            entity_type=conflict.entity_type,
            entity_id=conflict.entity_id,
            remote_id=conflict.remote_id,
            data=data,
            strategy=strategy,
        )
