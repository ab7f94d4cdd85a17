"""
Pricing calculator.

Totals are integer cents. One participant pays the partner's single price;
two or more pay the multi-player price per person. The deposit is the
partner's fee share of the (discounted) total, rounded half-up.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from models.discount_code import DiscountType
from services.errors import InvalidPricing, PartnerUnavailable, ValidationFailed

MIN_PLAYERS = 1
MAX_PLAYERS = 3


@dataclass(frozen=True)
class Quote:
    total_cents: int
    discount_cents: int
    deposit_cents: int
    rest_cents: int
    fee_percent: int

    @property
    def net_cents(self) -> int:
        return self.total_cents - self.discount_cents

    def to_dict(self) -> dict:
        return {
            "totalCents": self.total_cents,
            "discountCents": self.discount_cents,
            "depositCents": self.deposit_cents,
            "restCents": self.rest_cents,
        }


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_players(players_count) -> int:
    if isinstance(players_count, bool) or not isinstance(players_count, int):
        raise ValidationFailed("playersCount must be an integer", code="INVALID_PLAYERS_COUNT")
    if players_count < MIN_PLAYERS or players_count > MAX_PLAYERS:
        raise ValidationFailed(
            f"playersCount must be between {MIN_PLAYERS} and {MAX_PLAYERS}",
            code="INVALID_PLAYERS_COUNT",
        )
    return players_count


def total_cents(price_1pax_cents, price_2plus_cents, players_count: int) -> int:
    if players_count <= 1:
        total = price_1pax_cents
    else:
        total = (price_2plus_cents or 0) * players_count

    if total is None or isinstance(total, bool) or not isinstance(total, int) or total <= 0:
        raise InvalidPricing("Partner pricing is not configured")
    return total


def split_deposit(total: int, fee_percent) -> tuple[int, int]:
    """Returns (deposit_cents, rest_cents)."""
    fee = Decimal(str(fee_percent or 0))
    if fee < 0 or fee > 100:
        raise InvalidPricing("feePercent must be between 0 and 100")
    deposit = round_half_up(Decimal(total) * fee / Decimal(100))
    return deposit, max(0, total - deposit)


def discount_cents(total: int, discount) -> int:
    if discount is None:
        return 0
    if discount.type == DiscountType.PERCENT:
        percent = max(0, min(100, discount.percent or 0))
        amount = round_half_up(Decimal(total) * Decimal(percent) / Decimal(100))
    elif discount.type == DiscountType.FIXED:
        amount = min(max(0, discount.amount_cents or 0), total)
    else:
        amount = 0
    return max(0, amount)


def quote(total: int, fee_percent, discount_amount: int = 0) -> Quote:
    discount_amount = max(0, min(discount_amount or 0, total))
    deposit, rest = split_deposit(total - discount_amount, fee_percent)
    return Quote(
        total_cents=total,
        discount_cents=discount_amount,
        deposit_cents=deposit,
        rest_cents=rest,
        fee_percent=int(fee_percent or 0),
    )


def quote_for_partner(partner, players_count: int, discount_amount: int = 0) -> Quote:
    if partner is None or not partner.is_active:
        raise PartnerUnavailable("Partner not found or inactive")
    validate_players(players_count)
    total = total_cents(partner.price_1pax_cents, partner.price_2plus_cents, players_count)
    return quote(total, partner.fee_percent, discount_amount)
