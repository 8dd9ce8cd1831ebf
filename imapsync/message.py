"""Message record shared by the local store and the IMAP session."""

from dataclasses import dataclass, field


@dataclass
class MessageInfo:
    """A message on its way between the server and the Maildir.

    Remote-origin messages get uid_validity/uid from the server before they
    are stored. Local-origin messages come out of Maildir.scan() with only
    folder, path and flags; the IDs are filled in after upload.
    """
    folder: str
    path: str | None = None
    uid_validity: int = 0
    uid: int = 0
    flags: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.folder}/{self.uid or '-'} ({self.path or 'unsaved'})"
