"""
Provider account type normalization.

Institutions report account types with inconsistent strings. Everything is
mapped onto the closed AccountType set through the tables below; anything not
listed becomes AccountType.OTHER.
"""

from typing import Optional

from banksync.app.models import AccountType


ACCOUNT_TYPE_MAP = {
    "TRANSACTION": AccountType.CURRENT,
    "CHECKING": AccountType.CURRENT,
    "CURRENT": AccountType.CURRENT,
    "CURRENT_ACCOUNT": AccountType.CURRENT,
    "BUSINESS": AccountType.CURRENT,
    "SAVINGS": AccountType.SAVINGS,
    "SAVING": AccountType.SAVINGS,
    "DEPOSIT": AccountType.SAVINGS,
    "ISA": AccountType.SAVINGS,
    "CREDIT_CARD": AccountType.CREDIT,
    "CREDIT": AccountType.CREDIT,
    "CARD": AccountType.CREDIT,
    "CHARGE_CARD": AccountType.CREDIT,
    "PREPAID": AccountType.CASH,
    "PREPAID_CARD": AccountType.CASH,
    "CASH": AccountType.CASH,
    "E_MONEY": AccountType.CASH,
    "INVESTMENT": AccountType.INVESTMENT,
    "BROKERAGE": AccountType.INVESTMENT,
    "PENSION": AccountType.INVESTMENT,
    "STOCKS_AND_SHARES_ISA": AccountType.INVESTMENT,
}

# Consulted only when the primary type is missing or unknown
SUBTYPE_MAP = {
    "CREDIT_CARD": AccountType.CREDIT,
    "CHARGE_CARD": AccountType.CREDIT,
    "SAVINGS": AccountType.SAVINGS,
    "CURRENT_ACCOUNT": AccountType.CURRENT,
    "PREPAID_CARD": AccountType.CASH,
}


def _key(value: Optional[str]) -> str:
    return (value or "").strip().upper().replace(" ", "_").replace("-", "_")


def normalize_account_type(account_type: Optional[str], subtype: Optional[str] = None) -> AccountType:
    """
    Map a provider account type (and optional subtype) to AccountType.

    Examples:
        >>> normalize_account_type("TRANSACTION")
        <AccountType.CURRENT: 'current'>
        >>> normalize_account_type(None, "credit_card")
        <AccountType.CREDIT: 'credit'>
        >>> normalize_account_type("mortgage")
        <AccountType.OTHER: 'other'>
    """
    mapped = ACCOUNT_TYPE_MAP.get(_key(account_type))
    if mapped is not None:
        return mapped
    return SUBTYPE_MAP.get(_key(subtype), AccountType.OTHER)
