from .command import CommandRepository
from .event import EventRepository
from .invoice import InvoiceRepository
from .session import SessionRepository
from .tariff import TariffRepository

__all__ = [
    "CommandRepository",
    "EventRepository",
    "InvoiceRepository",
    "SessionRepository",
    "TariffRepository",
]
