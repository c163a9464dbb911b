"""Scoped filesystem capability tokens and cooperative cancellation."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path


class CapabilityResolutionError(RuntimeError):
    """Token is malformed, forged or already released."""


class ScopeViolationError(PermissionError):
    """A path escapes the directory granted by a capability."""


@dataclass(frozen=True, slots=True)
class CapabilityToken:
    """Opaque grant for one directory tree, passed to a worker as bytes."""

    token_id: str
    root: Path
    encoded: bytes


class CapabilityBroker:
    """Issues, resolves and revokes capability tokens.

    ``acquire`` and ``release`` are paired; a released token no longer resolves.
    """

    def __init__(self, secret: bytes | None = None) -> None:
        self._secret = secret or secrets.token_bytes(32)
        self._live: dict[str, Path] = {}
        self._lock = threading.Lock()

    def acquire(self, root: Path) -> CapabilityToken:
        resolved = root.resolve()
        token_id = secrets.token_hex(8)
        body = {"id": token_id, "root": str(resolved), "sig": self._sign(token_id, resolved)}
        encoded = base64.urlsafe_b64encode(json.dumps(body, sort_keys=True).encode("utf-8"))
        with self._lock:
            self._live[token_id] = resolved
        return CapabilityToken(token_id=token_id, root=resolved, encoded=encoded)

    def resolve(self, token: CapabilityToken | bytes) -> Path:
        encoded = token.encoded if isinstance(token, CapabilityToken) else token
        token_id, root, signature = _decode(encoded)
        if not hmac.compare_digest(signature, self._sign(token_id, root)):
            raise CapabilityResolutionError("Capability token signature mismatch")
        with self._lock:
            live_root = self._live.get(token_id)
        if live_root is None:
            raise CapabilityResolutionError(f"Capability token {token_id} is not active")
        return live_root

    def release(self, token: CapabilityToken) -> None:
        with self._lock:
            self._live.pop(token.token_id, None)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._live)

    def _sign(self, token_id: str, root: Path) -> str:
        message = f"{token_id}:{root}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()


def decode_capability_root(encoded: bytes | str) -> Path:
    """Read the granted root out of a token without the broker's secret.

    Workers use this; verification happens on the supervisor side.
    """

    raw = encoded.encode("ascii") if isinstance(encoded, str) else encoded
    _, root, _ = _decode(raw)
    return root


def ensure_within_scope(root: Path, candidate: Path) -> Path:
    """Return the resolved candidate, or raise if it is outside ``root``."""

    resolved_root = root.resolve()
    resolved = candidate.resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise ScopeViolationError(f"{candidate} is outside the granted scope {resolved_root}")
    return resolved


def _decode(encoded: bytes) -> tuple[str, Path, str]:
    try:
        body = json.loads(base64.urlsafe_b64decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as error:
        raise CapabilityResolutionError("Capability token is not decodable") from error
    if not isinstance(body, dict):
        raise CapabilityResolutionError("Capability token must encode an object")
    token_id = body.get("id")
    root = body.get("root")
    signature = body.get("sig")
    if not isinstance(token_id, str) or not isinstance(root, str) or not isinstance(signature, str):
        raise CapabilityResolutionError("Capability token is missing id, root or sig")
    return token_id, Path(root), signature


class CancellationToken:
    """Event-backed cancel flag checked at dispatch, per step and when a retry timer fires."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()
