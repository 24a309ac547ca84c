"""Input validation for payment requests.

Two layers, always in this order:

1. structural schema (pydantic): presence, types, lengths, regexes and the
   billing type enum; all problems are reported together in one message
2. business checks: Luhn over the card number, card expiry window, CVV and
   the CPF check digits

Nothing that fails here is ever forwarded to the payment gateway.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

import pydantic
from pydantic import (
    BaseModel, BeforeValidator, ConfigDict, Field, field_validator
)

from .errors import ValidationError
from .helpers import is_valid_email, only_digits

EXPIRY_HORIZON_YEARS = 20


# ----------------------------
# Checksums
# ----------------------------
def luhn_check(card_number: str) -> bool:
    digits = re.sub(r"[\s-]", "", card_number or "")
    if not re.fullmatch(r"\d{13,19}", digits):
        return False

    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def _cpf_digit(digits: str, weight: int) -> int:
    total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
    digit = 11 - (total % 11)
    return 0 if digit >= 10 else digit


def cpf_check_digits(base9: str) -> str:
    """The two check digits for the first nine digits of a CPF."""
    first = _cpf_digit(base9, 10)
    second = _cpf_digit(base9 + str(first), 11)
    return f"{first}{second}"


def validate_cpf(cpf: str) -> bool:
    digits = only_digits(cpf)
    if len(digits) != 11:
        return False
    if digits == digits[0] * 11:
        return False
    return cpf_check_digits(digits[:9]) == digits[9:]


def parse_expiry_year(year: str) -> Optional[int]:
    year = (year or "").strip()
    if re.fullmatch(r"\d{2}", year):
        return 2000 + int(year)
    if re.fullmatch(r"\d{4}", year):
        return int(year)
    return None


def validate_expiry(month: str, year: str,
                    today: Optional[date] = None) -> bool:
    today = today or date.today()
    try:
        m = int(month)
    except (TypeError, ValueError):
        return False
    if not 1 <= m <= 12:
        return False
    y = parse_expiry_year(year)
    if y is None:
        return False
    if y < today.year or (y == today.year and m < today.month):
        return False
    return y <= today.year + EXPIRY_HORIZON_YEARS


# ----------------------------
# Structural schemas
# ----------------------------
def _decimal_from_json(v):
    # 150.1 arrives as a float from JSON; go through str so Decimal
    # keeps the written value
    if isinstance(v, float):
        return str(v)
    return v


Money = Annotated[Decimal, BeforeValidator(_decimal_from_json)]


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class CreditCard(_Schema):
    holderName: str = Field(min_length=3, max_length=100)
    number: str = Field(pattern=r"^\d{13,19}$")
    expiryMonth: str = Field(pattern=r"^(0?[1-9]|1[0-2])$")
    expiryYear: str = Field(pattern=r"^(\d{2}|\d{4})$")
    ccv: str = Field(pattern=r"^\d{3,4}$")

    @field_validator("number", mode="before")
    @classmethod
    def _strip_separators(cls, v):
        if isinstance(v, str):
            return re.sub(r"[\s-]", "", v)
        return v


class CreditCardHolderInfo(_Schema):
    name: str = Field(min_length=3, max_length=100)
    email: str = Field(min_length=3, max_length=254)
    cpfCnpj: str = Field(min_length=1, max_length=20)
    postalCode: str = Field(min_length=1, max_length=12)
    addressNumber: str = Field(min_length=1, max_length=10)
    phone: str = Field(min_length=1, max_length=20)

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        if not is_valid_email(v):
            raise ValueError("invalid email")
        return v


class PaymentRequest(_Schema):
    giftId: str = Field(min_length=1, max_length=64)
    giftName: str = Field(min_length=1, max_length=200)
    value: Money = Field(gt=0, max_digits=12, decimal_places=2)
    customerName: str = Field(min_length=2, max_length=100)
    customerEmail: Optional[str] = Field(default=None, max_length=254)
    customerPhone: Optional[str] = Field(default=None, max_length=20)
    customerTaxId: Optional[str] = Field(default=None, max_length=20)
    billingType: Literal["PIX", "CREDIT_CARD"]
    creditCard: Optional[CreditCard] = None
    creditCardHolderInfo: Optional[CreditCardHolderInfo] = None

    @field_validator("customerEmail")
    @classmethod
    def _email(cls, v: Optional[str]) -> Optional[str]:
        if v in (None, ""):
            return None
        if not is_valid_email(v):
            raise ValueError("invalid email")
        return v

    @property
    def tax_id(self) -> Optional[str]:
        raw = (self.creditCardHolderInfo.cpfCnpj
               if self.creditCardHolderInfo else self.customerTaxId)
        return only_digits(raw) or None


class StatusRequest(_Schema):
    paymentId: str = Field(min_length=1, max_length=64)
    action: Literal["check", "cancel"] = "check"


class BillingItem(_Schema):
    giftId: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    price: Money = Field(gt=0, max_digits=12, decimal_places=2)
    # one unit per gift: purchase_count moves by one per purchase row
    quantity: int = Field(default=1, ge=1, le=1)

    @property
    def cents(self) -> int:
        return int((self.price * self.quantity * 100).to_integral_value())


class BillingRequest(_Schema):
    items: List[BillingItem] = Field(min_length=1, max_length=20)
    customerName: str = Field(min_length=2, max_length=100)
    customerEmail: Optional[str] = Field(default=None, max_length=254)
    customerPhone: Optional[str] = Field(default=None, max_length=20)
    customerTaxId: Optional[str] = Field(default=None, max_length=20)
    returnUrl: str = Field(pattern=r"^https?://\S+$", max_length=500)
    completionUrl: str = Field(pattern=r"^https?://\S+$", max_length=500)

    @field_validator("customerEmail")
    @classmethod
    def _email(cls, v: Optional[str]) -> Optional[str]:
        if v in (None, ""):
            return None
        if not is_valid_email(v):
            raise ValueError("invalid email")
        return v

    @property
    def tax_id(self) -> Optional[str]:
        return only_digits(self.customerTaxId) or None


# ----------------------------
# Entry points
# ----------------------------
def describe_errors(errors: List[dict]) -> str:
    parts = []
    for e in errors:
        loc = ".".join(str(p) for p in e.get("loc", ()))
        parts.append(f"{loc}: {e.get('msg')}" if loc else e.get("msg", ""))
    return "; ".join(parts)


def validate_credit_card(card: CreditCard,
                         today: Optional[date] = None) -> None:
    if len(card.holderName.strip()) < 3:
        raise ValidationError("Invalid card holder name")
    if not luhn_check(card.number):
        raise ValidationError("Invalid card number")
    if not validate_expiry(card.expiryMonth, card.expiryYear, today=today):
        raise ValidationError("Card expired or invalid expiry date")
    if not re.fullmatch(r"\d{3,4}", card.ccv):
        raise ValidationError("Invalid CVV")


def parse_payment_request(body: object,
                          today: Optional[date] = None) -> PaymentRequest:
    try:
        req = PaymentRequest.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid data",
                              details=describe_errors(e.errors()))

    if req.billingType == "CREDIT_CARD":
        missing = [name for name in ("creditCard", "creditCardHolderInfo")
                   if getattr(req, name) is None]
        if missing:
            raise ValidationError(
                "Invalid data",
                details="; ".join(f"{m}: required for CREDIT_CARD"
                                  for m in missing),
            )
        validate_credit_card(req.creditCard, today=today)

    if req.tax_id is not None and not validate_cpf(req.tax_id):
        raise ValidationError("Invalid CPF")
    return req


def parse_status_request(body: object) -> StatusRequest:
    try:
        return StatusRequest.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid data",
                              details=describe_errors(e.errors()))


def parse_billing_request(body: object) -> BillingRequest:
    try:
        req = BillingRequest.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid data",
                              details=describe_errors(e.errors()))

    gift_ids = [item.giftId for item in req.items]
    if len(set(gift_ids)) != len(gift_ids):
        raise ValidationError("Invalid data",
                              details="items: each gift may appear only once")
    if req.tax_id is not None and not validate_cpf(req.tax_id):
        raise ValidationError("Invalid CPF")
    return req
