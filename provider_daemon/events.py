"""
events.py - Typed marketplace events.

Turns raw receipt logs into AgreementCreated / AgreementClosed events,
keeping only the ones addressed to a product category and a provider this
daemon serves.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Union

from provider_daemon.ledger import AGREEMENT_CLOSED, AGREEMENT_CREATED, Receipt

if TYPE_CHECKING:
    from provider_daemon.ledger import LedgerClient

logger = logging.getLogger("events")


@dataclass(frozen=True)
class AgreementCreated:
    agreement_id: int
    offer_id: int
    owner_address: str
    provider_owner_address: str
    category: str
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass(frozen=True)
class AgreementClosed:
    agreement_id: int
    owner_address: str
    provider_owner_address: str
    category: str
    block_number: int
    transaction_hash: str
    log_index: int


AgreementEvent = Union[AgreementCreated, AgreementClosed]


def _addr(value) -> str:
    return str(value or "").lower()


class EventDecoder:
    """Decodes receipts into events for the served categories and providers."""

    def __init__(
        self,
        ledger: "LedgerClient",
        categories: Iterable[str],
        provider_owners: Iterable[str],
    ):
        self._ledger = ledger
        self._categories = {_addr(c) for c in categories}
        self._providers = {_addr(p) for p in provider_owners}

    @property
    def categories(self) -> frozenset:
        return frozenset(self._categories)

    def decode(self, receipt: Receipt) -> List[AgreementEvent]:
        raw_events = self._ledger.decode_logs(receipt.logs)
        raw_events = sorted(raw_events, key=lambda e: e.get("log_index", 0))
        events: List[AgreementEvent] = []
        for raw in raw_events:
            name = raw.get("event")
            if name not in (AGREEMENT_CREATED, AGREEMENT_CLOSED):
                continue
            category = _addr(raw.get("address"))
            if category not in self._categories:
                continue
            args = raw.get("args", {})
            provider_owner = _addr(args.get("providerOwnerAddr"))
            if provider_owner not in self._providers:
                logger.debug(
                    "Skipping %s #%s for provider %s (not served)",
                    name, args.get("id"), provider_owner,
                )
                continue
            common = dict(
                agreement_id=int(args["id"]),
                owner_address=_addr(args.get("userAddr")),
                provider_owner_address=provider_owner,
                category=category,
                block_number=receipt.block_number,
                transaction_hash=receipt.transaction_hash,
                log_index=int(raw.get("log_index", 0)),
            )
            if name == AGREEMENT_CREATED:
                events.append(AgreementCreated(offer_id=int(args["offerId"]), **common))
            else:
                events.append(AgreementClosed(**common))
        return events
