"""Conversion between Maildir flag letters and IMAP flags.

Maildir flags (https://cr.yp.to/proto/maildir.html):

- P (passed): the message has been resent/forwarded/bounced.
- R (replied): the message has been replied to.
- S (seen): the message has been viewed.
- T (trashed): the message has been moved to the trash.
- D (draft): the message is a draft.
- F (flagged): user-defined flag.

Flags that have no counterpart on the other side are dropped.
"""

from collections.abc import Iterable

FLAG_PASSED = "P"
FLAG_REPLIED = "R"
FLAG_SEEN = "S"
FLAG_TRASHED = "T"
FLAG_DRAFT = "D"
FLAG_FLAGGED = "F"

FLAG_IMAP_TABLE: dict[str, str] = {
    FLAG_PASSED: "$Forwarded",
    FLAG_REPLIED: "\\Answered",
    FLAG_SEEN: "\\Seen",
    FLAG_TRASHED: "\\Deleted",
    FLAG_DRAFT: "\\Draft",
    FLAG_FLAGGED: "\\Flagged",
}

_IMAP_FLAG_TABLE = {imap_flag: flag for flag, imap_flag in FLAG_IMAP_TABLE.items()}

MAILDIR_FLAGS = frozenset(FLAG_IMAP_TABLE)


def _as_str(flag: str | bytes) -> str:
    if isinstance(flag, bytes):
        return flag.decode("ascii", errors="replace")
    return flag


def to_imap(flags: Iterable[str]) -> list[str]:
    """Convert Maildir flag letters to IMAP flags, in sorted letter order."""
    return [FLAG_IMAP_TABLE[f] for f in sorted(set(flags)) if f in FLAG_IMAP_TABLE]


def from_imap(imap_flags: Iterable[str | bytes]) -> list[str]:
    """Convert IMAP flags to Maildir flag letters.

    IMAPClient hands flags back as bytes, so both bytes and str are accepted.
    System flags are matched case-insensitively.
    """
    letters = set()
    for raw in imap_flags:
        flag = _as_str(raw)
        letter = _IMAP_FLAG_TABLE.get(flag)
        if letter is None and flag.startswith("\\"):
            letter = _IMAP_FLAG_TABLE.get("\\" + flag[1:].capitalize())
        if letter is not None:
            letters.add(letter)
    return sorted(letters)


def flag_string(flags: Iterable[str]) -> str:
    """Return the sorted, concatenated letters used in a Maildir filename."""
    return "".join(sorted(set(flags)))
