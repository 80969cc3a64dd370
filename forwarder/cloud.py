from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote

import requests

from .errors import AuthError, ConfigError, DecodeError, RemoteError, TransportError

AGENT_TYPE_FLUENTBIT = "fluentbit"
AGENT_TYPE_FLUENTD = "fluentd"

MSGPACK_CONTENT_TYPE = "application/x-msgpack"


@dataclass(frozen=True)
class RegistryDialect:
    """One deployment variant of the cloud registry HTTP surface.

    Paths may contain ``{agent_id}``, which is path-escaped on use.
    """

    name: str
    create_method: str
    create_path: str
    update_method: str
    update_path: str
    metrics_method: str
    metrics_path: str
    project_header: str
    agent_header: str
    error_key: str
    metrics_count_key: str


DIALECT_V1 = RegistryDialect(
    name="v1",
    create_method="POST",
    create_path="/v1/agents",
    update_method="PATCH",
    update_path="/v1/agents/{agent_id}",
    metrics_method="POST",
    metrics_path="/v1/agents/{agent_id}/metrics",
    project_header="X-Project-Token",
    agent_header="X-Agent-Token",
    error_key="error",
    metrics_count_key="totalInserted",
)

DIALECT_LEGACY = RegistryDialect(
    name="legacy",
    create_method="POST",
    create_path="/agent",
    update_method="PUT",
    update_path="/agent/{agent_id}",
    metrics_method="PUT",
    metrics_path="/agent/{agent_id}/metric",
    project_header="X-API-Key",
    agent_header="X-API-Key",
    error_key="errors",
    metrics_count_key="total_inserted",
)

DIALECTS: Dict[str, RegistryDialect] = {d.name: d for d in (DIALECT_V1, DIALECT_LEGACY)}


def get_dialect(name: str) -> RegistryDialect:
    key = (name or "").strip().lower()
    try:
        return DIALECTS[key]
    except KeyError:
        raise ConfigError(f"unknown cloud dialect {name!r}; expected one of {sorted(DIALECTS)}") from None


@dataclass(frozen=True)
class CreateAgentPayload:
    name: str
    machine_id: str
    type: str
    version: str
    edition: str
    flags: Tuple[str, ...]
    raw_config: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "machineID": self.machine_id,
            "type": self.type,
            "version": self.version,
            "edition": self.edition,
            "flags": list(self.flags),
            "rawConfig": self.raw_config,
        }


@dataclass(frozen=True)
class UpdateAgentOpts:
    name: Optional[str] = None
    version: Optional[str] = None
    edition: Optional[str] = None
    flags: Optional[Tuple[str, ...]] = None
    raw_config: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """Only non-empty fields are sent; the server keeps the rest."""

        out: Dict[str, Any] = {}
        if self.name:
            out["name"] = self.name
        if self.version:
            out["version"] = self.version
        if self.edition:
            out["edition"] = self.edition
        if self.flags:
            out["flags"] = list(self.flags)
        if self.raw_config:
            out["rawConfig"] = self.raw_config
        return out


@dataclass(frozen=True)
class CreatedAgent:
    id: str
    token: str
    name: str
    created_at: Optional[datetime]


@dataclass(frozen=True)
class CreatedAgentMetrics:
    total_inserted: int


class CloudRegistry(Protocol):
    def set_agent_token(self, token: str) -> None: ...

    def create_agent(self, payload: CreateAgentPayload, timeout_s: Optional[float] = None) -> CreatedAgent: ...

    def update_agent(self, agent_id: str, opts: UpdateAgentOpts, timeout_s: Optional[float] = None) -> None: ...

    def add_metrics(
        self, agent_id: str, encoded: bytes, timeout_s: Optional[float] = None
    ) -> CreatedAgentMetrics: ...


def normalize_edition(edition: str) -> str:
    """Fluent Bit reports "Community"; the registry expects "community" or "enterprise"."""

    return (edition or "").strip().lower()


def _parse_dt(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _error_messages(body: Any, preferred_key: str) -> List[str]:
    """Messages from an error body; an object without any yields ``[]``."""

    if not isinstance(body, Mapping):
        raise DecodeError("error response was not a JSON object")

    keys = [preferred_key] + [k for k in ("error", "errors") if k != preferred_key]
    for key in keys:
        v = body.get(key)
        if isinstance(v, str) and v:
            return [v]
        if isinstance(v, list):
            messages = [m for m in v if isinstance(m, str) and m]
            if messages:
                return messages
    return []


class CloudClient:
    """HTTP client for the cloud agent registry and metrics sink."""

    def __init__(
        self,
        base_url: str,
        *,
        project_token: str = "",
        dialect: RegistryDialect = DIALECT_V1,
        session: Optional[requests.Session] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.project_token = project_token
        self.dialect = dialect
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self._agent_token = ""

    def set_agent_token(self, token: str) -> None:
        self._agent_token = token

    def _url(self, path: str, agent_id: str = "") -> str:
        return self.base_url + path.format(agent_id=quote(agent_id, safe=""))

    def _do(
        self,
        action: str,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        timeout_s: Optional[float],
        json: Optional[Mapping[str, Any]] = None,
        data: Optional[bytes] = None,
    ) -> requests.Response:
        try:
            resp = self.session.request(
                method,
                url,
                headers=dict(headers),
                json=json,
                data=data,
                timeout=timeout_s if timeout_s is not None else self.timeout_s,
            )
        except requests.RequestException as exc:
            raise TransportError(f"could not do request to {action}: {exc}") from exc

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError as exc:
                raise DecodeError(
                    f"could not json decode {action} error response ({resp.status_code}): {exc}"
                ) from exc
            raise RemoteError(resp.status_code, _error_messages(body, self.dialect.error_key))

        return resp

    @staticmethod
    def _json_body(resp: requests.Response, action: str) -> Mapping[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise DecodeError(f"could not json decode {action} response: {exc}") from exc
        if not isinstance(data, Mapping):
            raise DecodeError(f"{action} response was not a JSON object")
        return data

    def create_agent(self, payload: CreateAgentPayload, timeout_s: Optional[float] = None) -> CreatedAgent:
        if not self.project_token:
            raise AuthError("project token not set")

        resp = self._do(
            "create agent",
            self.dialect.create_method,
            self._url(self.dialect.create_path),
            headers={self.dialect.project_header: self.project_token},
            json=payload.to_json(),
            timeout_s=timeout_s,
        )
        data = self._json_body(resp, "create agent")

        agent_id = data.get("id")
        token = data.get("token")
        if not isinstance(agent_id, str) or not agent_id:
            raise DecodeError("create agent response is missing 'id'")
        if not isinstance(token, str) or not token:
            raise DecodeError("create agent response is missing 'token'")

        name = data.get("name")
        return CreatedAgent(
            id=agent_id,
            token=token,
            name=name if isinstance(name, str) and name else payload.name,
            created_at=_parse_dt(data.get("createdAt")),
        )

    def update_agent(self, agent_id: str, opts: UpdateAgentOpts, timeout_s: Optional[float] = None) -> None:
        if not self._agent_token:
            raise AuthError("agent token not set")

        self._do(
            "update agent",
            self.dialect.update_method,
            self._url(self.dialect.update_path, agent_id),
            headers={self.dialect.agent_header: self._agent_token},
            json=opts.to_json(),
            timeout_s=timeout_s,
        )

    def add_metrics(
        self, agent_id: str, encoded: bytes, timeout_s: Optional[float] = None
    ) -> CreatedAgentMetrics:
        if not self._agent_token:
            raise AuthError("agent token not set")

        resp = self._do(
            "add agent metrics",
            self.dialect.metrics_method,
            self._url(self.dialect.metrics_path, agent_id),
            headers={
                self.dialect.agent_header: self._agent_token,
                "Content-Type": MSGPACK_CONTENT_TYPE,
            },
            data=encoded,
            timeout_s=timeout_s,
        )
        data = self._json_body(resp, "add agent metrics")

        total: Any = data.get(self.dialect.metrics_count_key)
        if total is None:
            total = data.get("totalInserted", data.get("total_inserted"))
        if isinstance(total, bool) or not isinstance(total, int):
            raise DecodeError("add agent metrics response is missing an inserted count")
        return CreatedAgentMetrics(total_inserted=total)
