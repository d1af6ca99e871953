"""Remote origin protocol and its HTTP implementation.

The wire format is a batched push: one request carries every operation of a
batch and the response carries one result per operation id.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Protocol, Sequence, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from offsync.errors import TransientRemoteError
from offsync.types import Operation

logger = logging.getLogger(__name__)


# =============================================================================
# Wire Models
# =============================================================================


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncOperation(WireModel):
    """A single operation sent to the origin."""
    id: str
    kind: Literal["create", "update", "delete", "sync"]
    entity_type: str
    entity_id: str
    payload: dict[str, Any] | None = None  # None for delete
    base_version: Any | None = None

    @classmethod
    def from_operation(cls, op: Operation) -> "SyncOperation":
        return cls(
            id=op.id,
            kind=op.kind.value,
            entity_type=op.entity_type,
            entity_id=op.entity_id,
            payload=op.payload,
            base_version=op.base_version,
        )


class SyncPushRequest(WireModel):
    """Batch of local operations pushed to the origin."""
    operations: list[SyncOperation]


class OkResult(WireModel):
    id: str
    status: Literal["ok"]
    new_version: Any | None = None


class ConflictResult(WireModel):
    id: str
    status: Literal["conflict"]
    remote_state: dict[str, Any] | None = None  # None when deleted remotely
    remote_version: Any | None = None
    remote_updated_at: datetime | None = None


class TransientErrorResult(WireModel):
    id: str
    status: Literal["transientError"]
    retry_after: float | None = None  # seconds
    error: str | None = None


class PermanentErrorResult(WireModel):
    id: str
    status: Literal["permanentError"]
    reason: str = "rejected by origin"


OperationResult = Annotated[
    Union[OkResult, ConflictResult, TransientErrorResult, PermanentErrorResult],
    Field(discriminator="status"),
]


class SyncPushResponse(WireModel):
    """Per-operation results for a pushed batch."""
    results: list[OperationResult] = []
    server_time: datetime | None = None


# =============================================================================
# Origin
# =============================================================================


@dataclass
class PushResponse:
    """Results keyed by operation id, plus transfer sizes for stats."""

    results: Dict[str, Any] = field(default_factory=dict)
    bytes_sent: int = 0
    bytes_received: int = 0


class RemoteOrigin(Protocol):
    """The authoritative backend the engine reconciles against.

    ``push`` raises TransientRemoteError when the batch as a whole could not
    be exchanged; per-operation outcomes are reported in the response.
    """

    timeout: float

    def push(self, operations: Sequence[Operation]) -> PushResponse:
        ...

    def close(self) -> None:
        ...


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form is not supported; fall back to local backoff
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error") or body.get("reason")
        if detail:
            return str(detail)[:200]
    return f"HTTP {response.status_code}"


class HttpRemoteOrigin:
    """Pushes batches to ``{base_url}/sync/push`` with httpx.

    Args:
        base_url: Origin base URL.
        auth_token: Optional bearer token.
        timeout: Request timeout in seconds.
        client: Pre-built httpx client (tests pass one with a MockTransport).
    """

    PUSH_PATH = "/sync/push"

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self._client = client or httpx.Client()
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def push(self, operations: Sequence[Operation]) -> PushResponse:
        request = SyncPushRequest(
            operations=[SyncOperation.from_operation(op) for op in operations]
        )
        body = request.model_dump_json(by_alias=True).encode("utf-8")
        url = f"{self.base_url}{self.PUSH_PATH}"

        try:
            response = self._client.post(
                url, content=body, headers=self._headers(), timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"Timed out pushing to {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Could not reach {url}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(
                f"Origin returned HTTP {response.status_code}",
                retry_after=_retry_after(response),
            )

        if response.status_code >= 400:
            reason = _error_detail(response)
            logger.warning(f"Origin rejected batch of {len(operations)}: {reason}")
            return PushResponse(
                results={
                    op.id: PermanentErrorResult(id=op.id, status="permanentError", reason=reason)
                    for op in operations
                },
                bytes_sent=len(body),
                bytes_received=len(response.content),
            )

        try:
            parsed = SyncPushResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise TransientRemoteError(f"Malformed sync response: {e}") from e

        return PushResponse(
            results={result.id: result for result in parsed.results},
            bytes_sent=len(body),
            bytes_received=len(response.content),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

