from __future__ import annotations
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import BlockRange, Chunk


class ContractScanError(Exception):
    """Base class for every error raised by the indexing core."""


class ConfigError(ContractScanError):
    pass


class UnsupportedChainError(ConfigError):
    def __init__(self, chain: str) -> None:
        super().__init__(f"Unsupported chain: {chain}")
        self.chain = chain


class RPCError(ContractScanError):
    """A single endpoint answered with an HTTP failure or a JSON-RPC error object."""

    def __init__(self, message: str, *, url: str | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.code = code


class NoHealthyEndpointError(ContractScanError):
    def __init__(self, chain: str, detail: str = "") -> None:
        msg = f"No healthy RPC endpoint for chain {chain!r}"
        super().__init__(f"{msg}: {detail}" if detail else msg)
        self.chain = chain


class CircuitOpenError(ContractScanError):
    """Raised without calling upstream; the caller should back off."""

    def __init__(self, name: str, retry_in: float = 0.0) -> None:
        super().__init__(f"Circuit breaker is OPEN for {name} (retry in {retry_in:.1f}s)")
        self.name = name
        self.retry_in = retry_in


class FetchError(ContractScanError):
    def __init__(self, chain: str, block_range: "BlockRange", cause: BaseException, *, label: str = "") -> None:
        what = f"{label} " if label else ""
        super().__init__(
            f"Failed to fetch {what}blocks {block_range.start}-{block_range.end} on {chain}: "
            f"{type(cause).__name__}: {cause}"
        )
        self.chain = chain
        self.block_range = block_range
        self.cause = cause


class ValidationRejectedError(ContractScanError):
    def __init__(self, chunk: "Chunk", reason: str, attempts: int = 1) -> None:
        super().__init__(
            f"Chunk {chunk.start_block}-{chunk.end_block} rejected after {attempts} attempt(s): {reason}"
        )
        self.chunk = chunk
        self.reason = reason
        self.attempts = attempts


class RateLimitExceededError(ContractScanError):
    def __init__(self, user_id: str, tier: str, reason: str, remaining: dict[str, int] | None = None) -> None:
        super().__init__(f"Rate limit exceeded for user {user_id} ({tier}): {reason}")
        self.user_id = user_id
        self.tier = tier
        self.reason = reason
        self.remaining = remaining or {}


class StorageWriteError(ContractScanError):
    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(f"Failed to write {key}: {type(cause).__name__}: {cause}")
        self.key = key
        self.cause = cause


class ScanRejectedError(ContractScanError):
    """The manager refused to start a job (shutting down, duplicate job, bad request)."""


class MalformedRecordError(ContractScanError):
    """An upstream log or transaction could not be parsed into a record."""

    def __init__(self, kind: str, ident: object, cause: BaseException) -> None:
        super().__init__(f"malformed {kind} {ident}: {type(cause).__name__}: {cause}")
        self.kind = kind
        self.cause = cause
