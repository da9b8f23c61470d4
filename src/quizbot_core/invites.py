"""Invite snapshot reconciliation and join attribution."""

from __future__ import annotations

from collections.abc import Sequence

from quizbot_core.errors import PermissionDenied
from quizbot_core.logging import (
    StructuredLogger,
    get_logger,
    log_info,
    log_warning,
)
from quizbot_core.platform import InviteInfo, PlatformClient
from quizbot_core.state import AbstractStore, InviteRecord


class InviteTracker:
    """Keeps a per-community ``code -> uses`` cache in step with the platform.

    The durable invite rows are replaced on every sync. The cache is what
    :meth:`detect_used_invite` diffs against when a member joins.
    """

    def __init__(
        self,
        *,
        platform: PlatformClient,
        store: AbstractStore,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._platform = platform
        self._store = store
        self._logger = get_logger(__name__) if logger is None else logger
        self._uses: dict[str, dict[str, int]] = {}

    def cached_uses(self, community_id: str) -> dict[str, int]:
        return dict(self._uses.get(community_id, {}))

    async def sync(self, community_id: str) -> bool:
        """Refresh the persisted invite rows and the use-count cache.

        Returns:
            False when the platform denied access to the invite list.

        Raises:
            PersistenceFailure: When the store rejects the replacement.
        """
        invites = await self._fetch(community_id)
        if invites is None:
            return False

        records = [
            InviteRecord(invite.code, invite.inviter_id, invite.uses)
            for invite in invites
            if invite.inviter_id is not None
        ]
        await self._store.replace_invites(community_id, records)
        self._uses[community_id] = {invite.code: invite.uses for invite in invites}
        log_info(
            self._logger,
            "invites_synced",
            community_id=community_id,
            invites=len(records),
        )
        return True

    async def detect_used_invite(self, community_id: str) -> InviteInfo | None:
        """Return the invite whose use count grew since the last listing.

        The cache is refreshed with the fresh listing either way. Invites
        that are new since the last listing count from zero.
        """
        invites = await self._fetch(community_id)
        if invites is None:
            return None

        previous = self._uses.get(community_id, {})
        used = next(
            (
                invite
                for invite in invites
                if invite.uses > previous.get(invite.code, 0)
            ),
            None,
        )
        self._uses[community_id] = {invite.code: invite.uses for invite in invites}
        if used is None:
            log_info(self._logger, "invite_not_attributed", community_id=community_id)
            return None

        log_info(
            self._logger,
            "invite_attributed",
            community_id=community_id,
            code=used.code,
            inviter_id=used.inviter_id,
            uses=used.uses,
        )
        return used

    async def _fetch(self, community_id: str) -> Sequence[InviteInfo] | None:
        try:
            return await self._platform.fetch_invites(community_id)
        except PermissionDenied as error:
            log_warning(
                self._logger,
                "invites_unavailable",
                community_id=community_id,
                error=str(error),
            )
            return None
