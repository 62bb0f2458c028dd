"""Credential handling for OpenNebula sessions.

An OpenNebula session string is "username:password". This module enforces
where that secret may come from:

SECURITY INVARIANTS:
1. The session is read only from the OpenNebula auth file ($ONE_AUTH or
   ~/.one/one_auth), never from desired-state files or CLI arguments
2. Passwords in environment variables are refused
3. The auth file must not be readable by group or others
4. The password never appears in logs or reprs
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_AUTH_FILE = Path("~/.one/one_auth")
AUTH_FILE_ENV_VAR = "ONE_AUTH"

# Environment variables that would carry the password in clear text
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "ONE_PASSWORD",
    "ONEPASSWORD",
)

MAX_AUTH_FILE_SIZE_BYTES = 4096


class CredentialsError(Exception):
    """Raised when no usable session can be resolved."""

    pass


class InsecureCredentialsError(CredentialsError):
    """Raised when credentials are stored in an unsafe place.

    This is a fatal security error that prevents the operator from starting.
    """

    pass


def enforce_credential_hygiene() -> None:
    """Refuse to start when a password is exported in the environment.

    Raises:
        InsecureCredentialsError: If a forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Password found in environment",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise InsecureCredentialsError(
                f"{env_var} is set. Store the session in the auth file "
                f"(${AUTH_FILE_ENV_VAR} or {DEFAULT_AUTH_FILE}) with mode 0600 instead."
            )


def auth_file_path() -> Path:
    """Location of the auth file: $ONE_AUTH, else ~/.one/one_auth."""
    configured = os.environ.get(AUTH_FILE_ENV_VAR)
    return Path(configured).expanduser() if configured else DEFAULT_AUTH_FILE.expanduser()


def resolve_session(path: Path | None = None) -> str:
    """Read the "username:password" session string from the auth file.

    Args:
        path: Auth file to read; defaults to auth_file_path().

    Returns:
        The session string.

    Raises:
        InsecureCredentialsError: If the environment carries a password or the
            file is accessible by group or others.
        CredentialsError: If the file is missing, too large or malformed.
    """
    enforce_credential_hygiene()

    auth_path = path or auth_file_path()
    try:
        st = auth_path.stat()
    except OSError as e:
        raise CredentialsError(f"Cannot read auth file {auth_path}: {e}") from e

    if st.st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        raise InsecureCredentialsError(
            f"Auth file {auth_path} is accessible by group or others "
            f"(mode {stat.S_IMODE(st.st_mode):o}); run chmod 600 on it"
        )

    if st.st_size > MAX_AUTH_FILE_SIZE_BYTES:
        raise CredentialsError(f"Auth file {auth_path} exceeds {MAX_AUTH_FILE_SIZE_BYTES} bytes")

    try:
        content = auth_path.read_text(encoding="utf-8")
    except OSError as e:
        raise CredentialsError(f"Cannot read auth file {auth_path}: {e}") from e

    session = content.strip().splitlines()[0].strip() if content.strip() else ""
    username, sep, password = session.partition(":")
    if not sep or not username or not password:
        raise CredentialsError(f"Auth file {auth_path} must contain 'username:password'")

    logger.info("Resolved OpenNebula session", extra={"username": username})
    return session


def mask_session(session: str) -> str:
    """Render a session for logs: "user:***"."""
    username, sep, _ = session.partition(":")
    return f"{username}:***" if sep else "***"
