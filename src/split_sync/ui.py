"""Interactive chat console for posting @split commands."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .commands import SplitCommandExecutor, is_split_command
from .exceptions import SplitSyncError
from .models import CATEGORIES, User
from .service import SettlementService

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:
  @split <description> <amount> [#category] [@user ...] [@all]
  /pay <bill-id>       mark your share as paid
  /reject <bill-id>    decline your share
  /quit                leave the chat\
"""


class MentionCompleter(Completer):
    """Completes @usernames and #categories with fuzzy matching."""

    def __init__(self, users: list[User]):
        """Initialize the completer with the users that can be mentioned."""
        self.usernames = sorted(user.username for user in users)
        self.display_names = {user.username: user.name for user in users}

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions for the word before the cursor."""
        word = document.get_word_before_cursor(WORD=True)

        if word.startswith("@"):
            query = word[1:].lower()
            for candidate in ["all", *self.usernames]:
                if self._fuzzy_match(query, candidate.lower()):
                    yield Completion(
                        text=f"@{candidate}",
                        start_position=-len(word),
                        display_meta=self.display_names.get(candidate, "everyone"),
                    )
        elif word.startswith("#"):
            query = word[1:].lower()
            for category in CATEGORIES:
                if self._fuzzy_match(query, category.lower()):
                    yield Completion(
                        text=f"#{category.lower()}",
                        start_position=-len(word),
                    )

    def _fuzzy_match(self, query: str, text: str) -> bool:
        """
        Fuzzy match: all characters in query must appear in order in text.

        Example:
            query="bb" matches "bobby"
        """
        query_idx = 0
        for char in text:
            if query_idx < len(query) and char == query[query_idx]:
                query_idx += 1
        return query_idx == len(query)


def run_chat_console(
    service: SettlementService,
    actor: User,
    users: list[User],
    group_id: str | None = None,
    counterpart_id: str | None = None,
) -> None:
    """
    Read chat lines until /quit, running @split, /pay and /reject.

    Args:
        service: Settlement service
        actor: User typing in the console
        users: Users offered as @mention completions
        group_id: Group chat to post into, if any
        counterpart_id: Other user of a direct chat, if any
    """
    executor = SplitCommandExecutor(service, service.db)
    session: PromptSession[str] = PromptSession(completer=MentionCompleter(users))

    where = f"group {group_id}" if group_id else f"direct chat with {counterpart_id}"
    print(f"\n💬 {actor.name} in {where}")
    print(HELP_TEXT + "\n")

    while True:
        try:
            line = session.prompt(f"{actor.username}> ", complete_while_typing=True)
        except (KeyboardInterrupt, EOFError):
            print()
            return

        line = line.strip()
        if not line:
            continue

        if line in ("/quit", "/exit"):
            return

        if is_split_command(line):
            result = executor.execute(
                line, actor.id, group_id=group_id, counterpart_id=counterpart_id
            )
            prefix = "✅" if result.success else "❌"
            print(f"{prefix} {result.message}")
            if result.split_bill:
                print(f"   id: {result.split_bill.id}")
            continue

        parts = line.split()
        if parts[0] in ("/pay", "/reject") and len(parts) == 2:
            try:
                if parts[0] == "/pay":
                    bill = service.mark_payment_as_paid(parts[1], actor.id)
                else:
                    bill = service.reject_split_bill(parts[1], actor.id)
            except SplitSyncError as e:
                print(f"❌ {e}")
                continue
            print(f"✅ Split bill {bill.id} is {bill.status}")
            continue

        print(HELP_TEXT)
