"""Just-in-time credential placeholder resolution and secret redaction."""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from motor_cortex.secrets import CredentialStore, MemoryCredentialStore, credential_to_runtime_key

PLACEHOLDER_RE = re.compile(r"<credential:([A-Za-z0-9_]+)>")
# $NAME / ${NAME}; only names the store knows are rewritten.
ENV_REFERENCE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

REDACTION_MARKER = "[REDACTED]"
MIN_REDACTION_LENGTH = 8

# File contents keep their placeholders so secrets are never written to disk.
SKIP_RESOLUTION_FIELDS: dict[str, frozenset[str]] = {
    "write": frozenset({"content"}),
    "patch": frozenset({"new_text", "replacement"}),
}


def transform_strings(value: Any, rewrite: Callable[[str], str]) -> Any:
    """Apply rewrite to every string in a JSON-like tree; returns a new tree."""
    if isinstance(value, str):
        return rewrite(value)
    if isinstance(value, dict):
        return {k: transform_strings(v, rewrite) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [transform_strings(v, rewrite) for v in value]
    return value


def resolve_text(text: str, store: CredentialStore) -> tuple[str, list[str]]:
    """Replace placeholders and known $NAME references. Returns (text, missing names)."""
    missing: list[str] = []

    def _placeholder(match: re.Match[str]) -> str:
        name = match.group(1)
        value = store.get(name)
        if value is None:
            missing.append(name)
            return match.group(0)
        return value

    resolved = PLACEHOLDER_RE.sub(_placeholder, text)
    if "$" not in resolved:
        return resolved, missing

    known = {credential_to_runtime_key(n) for n in store.list()}

    def _reference(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        if credential_to_runtime_key(name) not in known:
            return match.group(0)
        value = store.get(name)
        if value is None:
            value = store.get(name.lower())
        if value is None:
            missing.append(name)
            return match.group(0)
        return value

    return ENV_REFERENCE_RE.sub(_reference, resolved), missing


@dataclass
class Resolution:
    args: dict[str, Any]
    missing: list[str] = field(default_factory=list)


def resolve_args(tool: str, args: dict[str, Any], store: CredentialStore | None) -> Resolution:
    """Resolve placeholders across a tool-call argument tree, right before execution."""
    if store is None:
        # Placeholders still have to be reported as missing.
        store = MemoryCredentialStore()
    skip = SKIP_RESOLUTION_FIELDS.get(tool, frozenset())
    missing: list[str] = []

    def _rewrite(text: str) -> str:
        resolved, names = resolve_text(text, store)
        missing.extend(names)
        return resolved

    resolved = {
        key: value if key in skip else transform_strings(value, _rewrite)
        for key, value in args.items()
    }
    return Resolution(args=resolved, missing=list(dict.fromkeys(missing)))


def missing_credentials_message(names: Iterable[str]) -> str:
    listed = ", ".join(names)
    return (
        f"Missing credentials: {listed}. Ask the user to provide them with ask_user, "
        "or register them in the credential store (keyring, or VAULT_<NAME> env vars)."
    )


def mask_placeholders(text: str) -> str:
    """Hide credential names in log lines."""
    return PLACEHOLDER_RE.sub("<credential:***>", text)


class Redactor:
    """Masks known secret values in text headed for the model, the store or the caller."""

    def __init__(self, values: Iterable[str] = ()) -> None:
        self._values: set[str] = set()
        for value in values:
            self.add(value)

    @classmethod
    def from_store(cls, store: CredentialStore | None) -> "Redactor":
        redactor = cls()
        if store is not None:
            for name in store.list():
                value = store.get(name)
                if value:
                    redactor.add(value)
        return redactor

    def add(self, value: str) -> None:
        if value and len(value) >= MIN_REDACTION_LENGTH:
            self._values.add(value)

    def redact(self, text: str) -> str:
        if not text:
            return text
        # Longest first so a secret containing another is masked whole.
        for value in sorted(self._values, key=len, reverse=True):
            if value in text:
                text = text.replace(value, REDACTION_MARKER)
        return text

    def redact_tree(self, value: Any) -> Any:
        return transform_strings(value, self.redact)
