"""
Mail transport boundary.

The orchestrator talks to a mailbox only through this interface. It relies
on ``list_unseen``, ``move_to_folder``, ``search`` and ``delete``; ``read``
and ``send`` complete the capability set for other callers.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from domain.models import MessageDetail, MessageSummary


class MailboxError(Exception):
    """Raised when a mailbox operation fails."""
    pass


class Mailbox(ABC):
    """Capability interface for a mailbox provider."""

    @abstractmethod
    def list_unseen(self, max_results: int) -> List[MessageSummary]:
        """Return up to ``max_results`` unseen inbox messages, newest first."""

    @abstractmethod
    def read(self, message_id: str) -> MessageDetail:
        """Return the full content of one message."""

    @abstractmethod
    def move_to_folder(self, message_id: str, folder: str) -> None:
        """
        Move a message to another folder.

        Raises:
            MailboxError: If the move fails
        """

    @abstractmethod
    def delete(self, message_id: str, folder: Optional[str] = None) -> None:
        """
        Permanently delete a message.

        Raises:
            MailboxError: If the delete fails
        """

    @abstractmethod
    def send(self, to: str, subject: str, body: str) -> None:
        """Send a plain-text message."""

    @abstractmethod
    def search(self, query: str, max_results: int, folder: Optional[str] = None) -> List[MessageSummary]:
        """Return messages in ``folder`` whose sender matches ``query``."""
