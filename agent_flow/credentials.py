"""
Credential Set
───────────────
Run-scoped, read-only mapping of secret names to values. Built once from
the process environment and passed explicitly to the steps that need it.
Values are never rendered by ``repr``/``str`` and are masked in log output
by ``SecretRedactingFilter``.
"""

import logging
import os
from collections.abc import Mapping
from typing import Iterable, Iterator, Optional

REDACTED = "***"

# Credentials that are forwarded like the others but are plain settings.
NON_SECRET_NAMES = frozenset({"LLM_PROVIDER"})


class CredentialSet(Mapping):
    """Immutable name → secret mapping forwarded to the delegated step."""

    def __init__(self, values: Optional[Mapping] = None):
        self._values = {str(k): str(v) for k, v in (values or {}).items()}

    @classmethod
    def from_env(cls, names: Iterable[str], environ: Optional[Mapping] = None) -> "CredentialSet":
        """Read the named credentials; absent names are forwarded as empty strings."""
        environ = os.environ if environ is None else environ
        return cls({name: environ.get(name, "") for name in names})

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        present = ", ".join(
            f"{name}={'set' if value else 'empty'}" for name, value in self._values.items()
        )
        return f"CredentialSet({present})"

    __str__ = __repr__

    def as_env(self) -> dict[str, str]:
        """Environment variables to merge into a subprocess environment."""
        return dict(self._values)

    def secret_values(self) -> list[str]:
        """Non-empty secret values, longest first, for masking."""
        values = {v for k, v in self._values.items() if v and k not in NON_SECRET_NAMES}
        return sorted(values, key=len, reverse=True)


class SecretRedactingFilter(logging.Filter):
    """Replace any known secret value in a log record with ``***``."""

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        try:
            message = record.getMessage()
        except Exception:
            # The handler reports the bad format or args; mask what it will print.
            record.msg = self.redact(str(record.msg))
            if isinstance(record.args, Mapping):
                record.args = {k: self.redact(str(v)) for k, v in record.args.items()}
            elif record.args:
                record.args = tuple(self.redact(str(a)) for a in record.args)
            return True
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self.redact(record.exc_text)
        return True
