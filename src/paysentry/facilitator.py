"""
Facilitator collaborator: the external service that verifies and settles
x402 payments.

Any object with verify / settle / supported methods works. Responses may
be the dataclasses below, the plain JSON dicts a facilitator returns, or
x402 SDK response models.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Union

import httpx
from x402.http import FacilitatorConfig

from .errors import FacilitatorError

logger = logging.getLogger(__name__)

DEFAULT_X402_VERSION = 1


@dataclass
class VerifyResponse:
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict:
        d = dict(self.raw)
        d.update({"isValid": self.is_valid, "invalidReason": self.invalid_reason, "payer": self.payer})
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class SettleResponse:
    success: bool
    tx_hash: Optional[str] = None
    network: Optional[str] = None
    error_reason: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict:
        d = dict(self.raw)
        d.update(
            {
                "success": self.success,
                "txHash": self.tx_hash,
                "network": self.network,
                "errorReason": self.error_reason,
            }
        )
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class SupportedKinds:
    schemes: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    kinds: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"schemes": list(self.schemes), "networks": list(self.networks), "kinds": list(self.kinds)}


class FacilitatorClient(Protocol):
    def verify(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> Any: ...

    def settle(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> Any: ...

    def supported(self) -> Any: ...


def _as_mapping(response: Any, kind: str) -> Mapping[str, Any]:
    # x402 SDK responses are pydantic models with camelCase aliases.
    if hasattr(response, "model_dump"):
        return response.model_dump(by_alias=True, exclude_none=True)
    if not isinstance(response, Mapping):
        raise TypeError(f"Unexpected {kind} response type: {type(response).__name__}")
    return response


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def coerce_verify(response: Union[VerifyResponse, Mapping[str, Any], Any]) -> VerifyResponse:
    if isinstance(response, VerifyResponse):
        return response
    response = _as_mapping(response, "verify")
    return VerifyResponse(
        is_valid=bool(_pick(response, "isValid", "is_valid")),
        invalid_reason=_pick(response, "invalidReason", "invalid_reason"),
        payer=_pick(response, "payer"),
        raw=dict(response),
    )


def coerce_settle(response: Union[SettleResponse, Mapping[str, Any], Any]) -> SettleResponse:
    if isinstance(response, SettleResponse):
        return response
    response = _as_mapping(response, "settle")
    return SettleResponse(
        success=bool(_pick(response, "success")),
        tx_hash=_pick(response, "txHash", "tx_hash", "transaction"),
        network=_pick(response, "network"),
        error_reason=_pick(response, "errorReason", "error_reason"),
        raw=dict(response),
    )


def coerce_supported(response: Union[SupportedKinds, Mapping[str, Any], Any]) -> SupportedKinds:
    if isinstance(response, SupportedKinds):
        return response
    response = _as_mapping(response, "supported")
    kinds = [dict(k) for k in response.get("kinds") or []]
    schemes = list(response.get("schemes") or [])
    networks = list(response.get("networks") or [])
    for kind in kinds:
        if kind.get("scheme") and kind["scheme"] not in schemes:
            schemes.append(kind["scheme"])
        if kind.get("network") and kind["network"] not in networks:
            networks.append(kind["network"])
    return SupportedKinds(schemes=schemes, networks=networks, kinds=kinds)


class HttpFacilitatorClient:
    """Facilitator reached over HTTP (POST /verify, POST /settle, GET /supported).

    Endpoint and credentials come from an x402 FacilitatorConfig; when it has
    an auth_provider, each request carries that endpoint's auth headers.
    """

    def __init__(
        self,
        config: FacilitatorConfig,
        timeout: float = 30.0,
        http: Optional[httpx.Client] = None,
    ):
        self.config = config
        self.url = config.url.rstrip("/")
        self._http = http or httpx.Client(timeout=timeout)

    def verify(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> VerifyResponse:
        return coerce_verify(self._post("verify", payload, requirements))

    def settle(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> SettleResponse:
        return coerce_settle(self._post("settle", payload, requirements))

    def supported(self) -> SupportedKinds:
        return coerce_supported(self._request("GET", "supported"))

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HttpFacilitatorClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _post(self, endpoint: str, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> dict:
        body = {
            "x402Version": payload.get("x402Version", DEFAULT_X402_VERSION),
            "paymentPayload": dict(payload),
            "paymentRequirements": dict(requirements),
        }
        return self._request("POST", endpoint, body)

    def _request(self, method: str, endpoint: str, body: Optional[dict] = None) -> dict:
        headers = self._auth_headers(endpoint)
        resp = self._http.request(method, f"{self.url}/{endpoint}", json=body, headers=headers)
        if resp.status_code >= 400:
            logger.warning("Facilitator %s %s returned %d", method, endpoint, resp.status_code)
            raise FacilitatorError(resp.status_code, resp.text[:500])
        try:
            data = resp.json()
        except ValueError as e:
            raise FacilitatorError(resp.status_code, f"Non-JSON response from /{endpoint}") from e
        if not isinstance(data, dict):
            raise FacilitatorError(resp.status_code, f"Unexpected response shape from /{endpoint}")
        return data

    def _auth_headers(self, endpoint: str) -> dict[str, str]:
        provider = self.config.auth_provider
        if provider is None:
            return {}
        return dict(getattr(provider.get_auth_headers(), endpoint) or {})
