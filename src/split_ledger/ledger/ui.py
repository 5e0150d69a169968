"""Interactive UI components for picking group members."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from ..models import User

logger = logging.getLogger(__name__)


def member_label(user: User) -> str:
    """Display label used for completion and lookup."""
    return f"{user.name} <{user.email}>"


class MemberCompleter(Completer):
    """Fuzzy search completer for group members."""

    def __init__(self, users: list[User]):
        """Initialize the completer with the selectable users."""
        self.users = users
        self.label_to_id = {member_label(user): user.id for user in users}

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        query = document.text.lower()

        for label in self.label_to_id:
            if not query:
                yield Completion(text=label, start_position=0, display=label)
            elif self._fuzzy_match(query, label.lower()):
                yield Completion(
                    text=label, start_position=-len(document.text), display=label
                )

    def _fuzzy_match(self, query: str, text: str) -> bool:
        """
        Fuzzy match: all characters in query must appear in order in text.

        Example:
            query="aln" matches "Alan <alan@example.com>"
        """
        query_idx = 0
        for char in text:
            if query_idx < len(query) and char == query[query_idx]:
                query_idx += 1
        return query_idx == len(query)


def select_member_interactive(
    users: list[User],
    prompt_label: str,
    exclude: set[str] | None = None,
) -> str | None:
    """
    Interactive member selection with fuzzy search.

    Args:
        users: Candidate members
        prompt_label: Question shown above the prompt
        exclude: User IDs that may not be picked

    Returns:
        Selected user ID, or None to cancel
    """
    candidates = [user for user in users if user.id not in (exclude or set())]
    if not candidates:
        print("\nNo members to choose from")
        return None

    print(f"\n{prompt_label}")
    print("   Type to search, press Enter to confirm, Ctrl+C to cancel\n")

    completer = MemberCompleter(candidates)
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        while True:
            result = session.prompt("Member: ", complete_while_typing=True)

            if not result:
                return None

            user_id = completer.label_to_id.get(result)
            if user_id:
                logger.info(f"User selected member: {result}")
                return user_id

            print("Invalid member. Please select from the list or press Tab.")

    except KeyboardInterrupt:
        print("\nCancelled")
        return None
    except EOFError:
        return None


def confirm_settlement(payer: User, receiver: User, amount: str) -> bool:
    """Simple yes/no confirmation before recording a payment."""
    print(f"\n{payer.name} pays {receiver.name} ${amount}")
    response = input("   Record this payment? [Y/n] ").strip().lower()
    return response in ("", "y", "yes")
