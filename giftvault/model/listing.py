# model/listing.py
from __future__ import annotations
from typing import List, Optional, Sequence

from ..errors import NotFound, ValidationError
from ..helpers import new_id, now_ts, to_cents
from ..infra.sql import Gated
from .db import Listing


def _check_pct(name: str, value: float) -> float:
    value = float(value)
    if not 0 <= value <= 100:
        raise ValidationError(f"{name} must be between 0 and 100")
    return value


class ListingStore:
    def __init__(self, SessionAsync, gated: Gated) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated

    async def create(
        self,
        company_id: str,
        *,
        title: str,
        brand: str,
        denominations: Sequence,
        currency: str = "USD",
        discount_percentage: float = 0.0,
        seller_fee_percentage: float = 0.0,
        seller_fee_fixed=0,
        auto_fulfill: bool = True,
    ) -> Listing:
        if not title or not brand:
            raise ValidationError("title and brand are required")
        if not denominations:
            raise ValidationError("at least one denomination is required")
        if len(currency) != 3:
            raise ValidationError("currency must be a 3-letter code")
        cents: List[int] = sorted({to_cents(d) for d in denominations})
        fee_fixed = to_cents(seller_fee_fixed) if seller_fee_fixed else 0

        listing = Listing(
            id=new_id("lst"),
            company_id=company_id,
            title=title,
            brand=brand,
            currency=currency.upper(),
            denominations=cents,
            discount_percentage=_check_pct(
                "discount_percentage", discount_percentage),
            seller_fee_percentage=_check_pct(
                "seller_fee_percentage", seller_fee_percentage),
            seller_fee_fixed=fee_fixed,
            auto_fulfill=auto_fulfill,
            status="active",
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    s.add(listing)
        return listing

    async def get(self, listing_id: str) -> Optional[Listing]:
        async with self.gated():
            async with self.SessionAsync() as s:
                return await s.get(Listing, listing_id)

    async def require(self, listing_id: str,
                      company_id: Optional[str] = None) -> Listing:
        listing = await self.get(listing_id)
        if listing is None or (
                company_id is not None and listing.company_id != company_id):
            raise NotFound("Listing", listing_id)
        return listing

    async def set_status(self, listing_id: str, status: str) -> None:
        if status not in ("active", "inactive"):
            raise ValidationError(f"unknown listing status: {status}")
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    listing = await s.get(Listing, listing_id)
                    if listing is None:
                        raise NotFound("Listing", listing_id)
                    listing.status = status
