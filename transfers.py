"""
external money transfer collaborator.

the payout batcher makes exactly one create_transfer call per payout,
always with the payout's idempotency key, and uses find_transfer during
reconciliation to learn whether an ambiguous call actually went through.
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import httpx
from loguru import logger

from config import Settings
from errors import TransferFailed, TransferTimeout


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    amount_cents: int
    destination: str
    idempotency_key: str


class TransferClient(Protocol):
    def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransferResult: ...

    def find_transfer(self, idempotency_key: str) -> Optional[TransferResult]: ...


class StripeTransferClient:
    """Stripe Connect transfers over the REST API."""

    def __init__(
        self,
        secret_key: str,
        api_base: str = "https://api.stripe.com",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self._client = client or httpx.Client(
            base_url=api_base,
            timeout=timeout,
            headers={"Authorization": f"Bearer {secret_key}"},
        )

    def close(self) -> None:
        self._client.close()

    def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransferResult:
        form = {
            "amount": str(amount_cents),
            "currency": currency,
            "destination": destination,
            # transfer_group lets reconciliation find the transfer by key
            "transfer_group": idempotency_key,
            "metadata[type]": "affiliate_commission",
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        data = self._request(
            "POST",
            "/v1/transfers",
            data=form,
            headers={"Idempotency-Key": idempotency_key},
        )
        return _to_result(data, idempotency_key)

    def find_transfer(self, idempotency_key: str) -> Optional[TransferResult]:
        data = self._request(
            "GET",
            "/v1/transfers",
            params={"transfer_group": idempotency_key, "limit": 1},
        )
        found = data.get("data") or []
        if not found:
            return None
        return _to_result(found[0], idempotency_key)

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            res = self._client.request(method, url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # never reached the server, nothing can have happened
            raise TransferFailed(f"transfer endpoint unreachable: {e}") from e
        except httpx.TimeoutException as e:
            raise TransferTimeout(f"transfer call timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransferFailed(f"transfer call interrupted: {e}", ambiguous=True) from e

        if res.status_code >= 500 or res.status_code == 409:
            raise TransferFailed(
                f"transfer endpoint returned {res.status_code}", ambiguous=True
            )
        if res.status_code >= 400:
            try:
                message = res.json().get("error", {}).get("message", res.text)
            except ValueError:
                message = res.text
            raise TransferFailed(f"transfer rejected ({res.status_code}): {message}")
        return res.json()


@dataclass
class SandboxTransferClient:
    """
    in-process stand-in used when no Stripe key is configured.
    idempotent per key, like the real thing.
    """

    transfers: Dict[str, TransferResult] = field(default_factory=dict)

    def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransferResult:
        existing = self.transfers.get(idempotency_key)
        if existing is not None:
            return existing
        result = TransferResult(
            transfer_id=f"tr_test_{uuid.uuid4().hex[:16]}",
            amount_cents=amount_cents,
            destination=destination,
            idempotency_key=idempotency_key,
        )
        self.transfers[idempotency_key] = result
        logger.info(
            "sandbox transfer {} of {} {} to {}", result.transfer_id, amount_cents, currency, destination
        )
        return result

    def find_transfer(self, idempotency_key: str) -> Optional[TransferResult]:
        return self.transfers.get(idempotency_key)


def build_transfer_client(settings: Settings) -> TransferClient:
    if settings.stripe_secret_key is None:
        logger.warning("no stripe key configured, payouts use the sandbox transfer client")
        return SandboxTransferClient()
    return StripeTransferClient(
        secret_key=settings.stripe_secret_key.get_secret_value(),
        api_base=settings.stripe_api_base,
        timeout=settings.transfer_timeout_seconds,
    )


def _to_result(data: dict, idempotency_key: str) -> TransferResult:
    return TransferResult(
        transfer_id=data["id"],
        amount_cents=int(data.get("amount", 0)),
        destination=data.get("destination") or "",
        idempotency_key=idempotency_key,
    )
