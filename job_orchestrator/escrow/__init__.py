"""Payment escrow: gateway adapter, transaction ledger and manager."""

from .gateway import PaymentGateway, SandboxGateway, DECLINED_TOKEN
from .ledger import TransactionLedger
from .manager import EscrowManager, ReconciliationItem, SYSTEM_ACTOR

__all__ = [
    "PaymentGateway",
    "SandboxGateway",
    "DECLINED_TOKEN",
    "TransactionLedger",
    "EscrowManager",
    "ReconciliationItem",
    "SYSTEM_ACTOR",
]
