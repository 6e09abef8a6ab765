"""Persistent storage for a client's current L402 token."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union

from .token import Token, deserialize_token, serialize_token

STORE_FILE_NAME = "l402.token"
STORE_FILE_NAME_PENDING = "l402.token.pending"

MANUAL_RETRY_HINT = ("consider removing pending token file if error "
                     "persists. use 'listauth' command to find out token "
                     "file name")

_LEGACY_RENAMES = (
    ("lsat.token", STORE_FILE_NAME),
    ("lsat.token.pending", STORE_FILE_NAME_PENDING),
)


class NoTokenError(LookupError):
    """The store holds no token yet."""

    def __init__(self, message: str = "no token in store") -> None:
        super().__init__(message)


class TokenReplaceError(ValueError):
    """A paid token would be replaced outside the pending-to-paid flow."""

    def __init__(self) -> None:
        super().__init__("won't replace existing paid token with new token. "
                         + MANUAL_RETRY_HINT)


class Store(ABC):
    """Somewhere to keep and retrieve L402 tokens."""

    @abstractmethod
    def current_token(self) -> Token:
        """The current token; raises NoTokenError if there is none."""

    @abstractmethod
    def all_tokens(self) -> dict[str, Token]:
        """Every known token, keyed by file name or storage key."""

    @abstractmethod
    def store_token(self, token: Token) -> None:
        """Save a token to the store."""

    @abstractmethod
    def remove_pending_token(self) -> None:
        """Drop the pending token; raises NoTokenError if there is none."""


def _file_exists(path: Path) -> bool:
    try:
        path.stat()
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def _read_token_file(path: Path) -> Token:
    return deserialize_token(path.read_bytes())


def _write_file(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


class FileStore(Store):
    """Keeps one current token, pending or paid, in a directory of files."""

    def __init__(self, store_dir: Union[str, os.PathLike]) -> None:
        directory = Path(store_dir)
        if not _file_exists(directory):
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)

        for old_name, new_name in _LEGACY_RENAMES:
            old_path = directory / old_name
            new_path = directory / new_name
            try:
                new_path.stat()
            except FileNotFoundError:
                pass
            except OSError:
                continue
            else:
                continue
            try:
                old_path.stat()
            except OSError:
                continue
            try:
                os.rename(old_path, new_path)
            except OSError as exc:
                raise OSError(
                    f"failed to rename {old_path} to {new_path}: {exc}"
                ) from exc

        self._file_name = directory / STORE_FILE_NAME
        self._file_name_pending = directory / STORE_FILE_NAME_PENDING

    def current_token(self) -> Token:
        if _file_exists(self._file_name):
            return _read_token_file(self._file_name)
        if _file_exists(self._file_name_pending):
            return _read_token_file(self._file_name_pending)
        raise NoTokenError()

    def all_tokens(self) -> dict[str, Token]:
        directory = self._file_name.parent
        return {
            str(entry): _read_token_file(entry)
            for entry in sorted(directory.iterdir(), key=lambda p: p.name)
            if entry.name.startswith(STORE_FILE_NAME)
        }

    def store_token(self, token: Token) -> None:
        data = serialize_token(token)

        try:
            current = self.current_token()
        except NoTokenError:
            target = (self._file_name_pending if token.is_pending()
                      else self._file_name)
            _write_file(target, data)
            return

        if current.is_pending() and not token.is_pending():
            if current.payment_hash != token.payment_hash:
                raise ValueError("new paid token doesn't match existing "
                                 "pending token")
            # Write the paid token first so the pending one survives a
            # failure; the paid file takes precedence when both exist.
            _write_file(self._file_name, data)
            try:
                self._file_name_pending.unlink()
            except OSError:
                pass
            return

        raise TokenReplaceError()

    def remove_pending_token(self) -> None:
        if not _file_exists(self._file_name_pending):
            raise NoTokenError()
        self._file_name_pending.unlink()