"""Account driver - runs push and pull for each configured account."""

from __future__ import annotations

import asyncio
import logging
import os

from ..config import AccountConfig, Config
from ..errors import StorageError, SyncError
from ..imap_client import ImapSession
from ..maildir import Maildir
from ..sync import Synchronizer, SyncResult

logger = logging.getLogger("imapsync")


def open_maildir(account: AccountConfig) -> Maildir:
    """Create the account's Maildir root if needed and open the store."""
    try:
        os.makedirs(account.maildir, mode=0o700, exist_ok=True)
    except OSError as e:
        raise StorageError(f"[{account.name}] cannot create maildir {account.maildir}: {e}") from e
    return Maildir(account.maildir)


async def sync_account(
    account: AccountConfig,
    *,
    push: bool = True,
    pull: bool = True,
) -> SyncResult:
    """Synchronize one account: connect, push, pull, close.

    Raises:
        SyncError: Any failure; the account's remaining work is abandoned.
    """
    loop = asyncio.get_running_loop()

    with open_maildir(account) as maildir:
        session = await loop.run_in_executor(None, ImapSession.connect, account)
        try:
            result = await Synchronizer(session, maildir).run(push=push, pull=pull)
        except BaseException:
            try:
                await loop.run_in_executor(None, session.close)
            except SyncError as e:
                logger.debug(f"[{account.name}] {e}")
            raise
        await loop.run_in_executor(None, session.close)

    return result


async def run_account(
    account: AccountConfig,
    *,
    push: bool = True,
    pull: bool = True,
) -> bool:
    """Run one account and log the outcome.

    Returns:
        True if the account synchronized without error.
    """
    if not account.maildir:
        logger.warning(f"maildir not set for account {account.name}, skipping")
        return True

    try:
        result = await sync_account(account, push=push, pull=pull)
    except SyncError as e:
        logger.error(f"[{account.name}] Sync failed: {e}")
        return False
    except Exception:
        logger.exception(f"[{account.name}] Unexpected error during sync")
        return False

    logger.info(
        f"[{account.name}] Sync complete: {result.uploaded} uploaded, "
        f"{result.downloaded} downloaded"
    )
    return True


async def run_sync(
    config: Config,
    accounts: list[str] | None = None,
    *,
    push: bool = True,
    pull: bool = True,
) -> bool:
    """Synchronize accounts one after the other.

    A failing account does not stop the ones after it.

    Args:
        config: Loaded configuration
        accounts: Names of accounts to run; all accounts if None

    Returns:
        True if every account succeeded.
    """
    selected = config.accounts
    if accounts:
        selected = [a for a in config.accounts if a.name in accounts]

    ok = True
    for account in selected:
        if not await run_account(account, push=push, pull=pull):
            ok = False
    return ok
