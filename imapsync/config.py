"""Configuration management for imap-sync."""

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_IMAP_PORT = 143
DEFAULT_IMAPS_PORT = 993


def default_config_path() -> Path:
    """Return $XDG_CONFIG_HOME/imap-sync/config.toml (or ~/.config/...)."""
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(
        os.path.expanduser("~"), ".config"
    )
    return Path(config_home) / "imap-sync" / "config.toml"


def expand_path(path: str) -> str:
    """Expand ~, $HOME and $VAR in ``path`` and make it absolute."""
    path = os.path.expandvars(os.path.expanduser(path))
    return os.path.normpath(os.path.abspath(path))


def password_env_var(account_name: str) -> str:
    """Name of the environment variable that overrides an account password."""
    return "IMAPSYNC_" + re.sub(r"[^A-Za-z0-9]", "_", account_name).upper() + "_PASSWORD"


@dataclass
class FolderFilter:
    """Which server folders to synchronize.

    With a non-empty include list only those folders are used, and each of
    them must exist on the server. Excluded folders are always dropped.
    """
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)


@dataclass
class AccountConfig:
    """One IMAP account and the Maildir it is mirrored into.

    The password can also be provided via IMAPSYNC_<ACCOUNT>_PASSWORD.
    """
    name: str
    maildir: str = ""
    server: str = ""
    port: int = 0  # 0 = 143, or 993 with use_tls
    username: str = ""
    password: str = field(default="", repr=False)
    password_cmd: str = ""
    use_tls: bool = False
    use_starttls: bool = False
    folders: FolderFilter = field(default_factory=FolderFilter)

    def effective_port(self) -> int:
        if self.port:
            return self.port
        return DEFAULT_IMAPS_PORT if self.use_tls else DEFAULT_IMAP_PORT


@dataclass
class Config:
    accounts: list[AccountConfig] = field(default_factory=list)

    def get_account(self, name: str) -> AccountConfig | None:
        for account in self.accounts:
            if account.name == name:
                return account
        return None


def _expect(value, kind: type | tuple[type, ...], where: str):
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ConfigError(f"Invalid value for {where}: {value!r}")
    return value


def _str_list(value, where: str) -> list[str]:
    _expect(value, list, where)
    for item in value:
        _expect(item, str, where)
    return list(value)


def parse_account(name: str, data: dict) -> AccountConfig:
    """Build an AccountConfig from one [accounts.<name>] table."""
    where = f"accounts.{name}"
    _expect(data, dict, where)

    folders_data = _expect(data.get("folders", {}), dict, f"{where}.folders")
    folders = FolderFilter(
        include=_str_list(folders_data.get("include", []), f"{where}.folders.include"),
        exclude=_str_list(folders_data.get("exclude", []), f"{where}.folders.exclude"),
    )

    maildir = _expect(data.get("maildir", ""), str, f"{where}.maildir")
    account = AccountConfig(
        name=name,
        maildir=expand_path(maildir) if maildir else "",
        server=_expect(data.get("server", ""), str, f"{where}.server"),
        port=_expect(data.get("port", 0), int, f"{where}.port"),
        username=_expect(data.get("username", ""), str, f"{where}.username"),
        password=_expect(data.get("password", ""), str, f"{where}.password"),
        password_cmd=_expect(data.get("password_cmd", ""), str, f"{where}.password_cmd"),
        use_tls=_expect(data.get("use_tls", False), bool, f"{where}.use_tls"),
        use_starttls=_expect(data.get("use_starttls", False), bool, f"{where}.use_starttls"),
        folders=folders,
    )

    env_password = os.environ.get(password_env_var(name))
    if env_password:
        account.password = env_password

    return account


def load_config(path: str | Path) -> Config:
    """Load configuration from a TOML file.

    Raises:
        FileNotFoundError: The file does not exist.
        ConfigError: The file is not valid TOML or has values of the wrong type.
    """
    path = Path(path)
    with path.open("rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    accounts_data = _expect(data.get("accounts", {}), dict, "accounts")
    accounts = [parse_account(name, table) for name, table in accounts_data.items()]

    if not accounts:
        logger.warning(f"No accounts configured in {path}")

    return Config(accounts=accounts)
