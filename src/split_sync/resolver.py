"""Participant resolution for new split bills."""

import logging
from typing import Any, Protocol

from .exceptions import (
    DuplicateParticipantError,
    GroupNotFoundError,
    NotAGroupMemberError,
    SelfOnlySplitError,
    UnknownParticipantError,
    ValidationError,
)
from .identifiers import normalize_id
from .models import DirectScope, Group, GroupScope, User

logger = logging.getLogger(__name__)


class Directory(Protocol):
    """Read access to users and group membership."""

    def get_user(self, user_id: str) -> User | None: ...

    def find_user(self, ref: Any) -> User | None: ...

    def get_group(self, group_id: str) -> Group | None: ...

    def active_member_ids(self, group_id: str) -> list[str]: ...


class ParticipantResolver:
    """Determines the final, ordered participant set of a new bill."""

    def __init__(self, directory: Directory):
        """Initialize the resolver."""
        self.directory = directory

    def resolve(
        self,
        creator_id: str,
        scope: GroupScope | DirectScope,
        mentions: list[Any] | None = None,
    ) -> list[str]:
        """
        Resolve the participants of a new bill.

        Explicit mentions win. Without mentions a group bill is shared with
        every active member. The creator always comes first.

        Args:
            creator_id: Canonical id of the user creating the bill
            scope: Group or direct scope of the bill
            mentions: Raw participant references (ids, usernames, @mentions)

        Returns:
            Participant user ids, creator first, then others in request order

        Raises:
            UnknownParticipantError: If a mention cannot be resolved
            DuplicateParticipantError: If a direct bill names a user twice
            SelfOnlySplitError: If the creator would be the only participant
            GroupNotFoundError: If the group does not exist
            NotAGroupMemberError: If a participant is not an active member
        """
        creator_id = normalize_id(creator_id)

        if isinstance(scope, GroupScope):
            return self._resolve_group(creator_id, scope.group_id, mentions)
        return self._resolve_direct(creator_id, mentions)

    def _resolve_mentions(self, mentions: list[Any]) -> list[str]:
        resolved = []
        unknown = []
        for mention in mentions:
            user = self.directory.find_user(mention)
            if user is None:
                unknown.append(normalize_id(mention))
            else:
                resolved.append(user.id)

        if unknown:
            raise UnknownParticipantError(unknown)
        return resolved

    def _resolve_group(
        self, creator_id: str, group_id: str, mentions: list[Any] | None
    ) -> list[str]:
        if self.directory.get_group(group_id) is None:
            raise GroupNotFoundError(group_id)

        active_ids = self.directory.active_member_ids(group_id)
        if creator_id not in active_ids:
            raise NotAGroupMemberError(group_id, [creator_id])

        if mentions:
            others = self._resolve_mentions(mentions)
        else:
            others = list(active_ids)
            logger.debug(
                f"No mentions, defaulting to {len(others)} active member(s) "
                f"of group {group_id}"
            )

        # Creator first; repeated mentions collapse
        participant_ids = [creator_id]
        for user_id in others:
            if user_id not in participant_ids:
                participant_ids.append(user_id)

        outsiders = [uid for uid in participant_ids if uid not in active_ids]
        if outsiders:
            raise NotAGroupMemberError(group_id, outsiders)

        if len(participant_ids) == 1:
            raise SelfOnlySplitError(
                "No other active group members to split with"
                if not mentions
                else None
            )

        return participant_ids

    def _resolve_direct(self, creator_id: str, mentions: list[Any] | None) -> list[str]:
        if not mentions:
            raise ValidationError("A direct split bill needs at least one participant")

        if self.directory.get_user(creator_id) is None:
            raise UnknownParticipantError([creator_id])

        others = self._resolve_mentions(mentions)

        seen: set[str] = set()
        duplicates = []
        for user_id in others:
            if user_id in seen and user_id not in duplicates:
                duplicates.append(user_id)
            seen.add(user_id)
        if duplicates:
            raise DuplicateParticipantError(duplicates)

        others = [user_id for user_id in others if user_id != creator_id]
        if not others:
            raise SelfOnlySplitError()

        return [creator_id, *others]
