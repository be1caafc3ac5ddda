"""
Modelos SQLAlchemy. Importar aquí para que Alembic los detecte en autogenerate.
"""

from models.address_label import AddressLabel
from models.exchange_connection import ExchangeConnection
from models.price_history import PriceHistory
from models.token_symbol_mapping import TokenSymbolMapping
from models.transaction import (
    FlowDirection,
    Transaction,
    TransactionCategory,
    TransactionFlow,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from models.wallet import Wallet

__all__ = [
    "AddressLabel",
    "ExchangeConnection",
    "FlowDirection",
    "PriceHistory",
    "TokenSymbolMapping",
    "Transaction",
    "TransactionCategory",
    "TransactionFlow",
    "TransactionSource",
    "TransactionStatus",
    "TransactionType",
    "Wallet",
]
