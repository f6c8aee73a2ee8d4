"""
Sessions de caisse: un panier et un orchestrateur par terminal.
Le cycle de vie du panier suit la session, jamais le processus.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from caisse.checkout import CheckoutOrchestrator
from caisse.ledger import PriceLedger
from caisse.payments import MpesaGateway
from caisse.receipts import ReceiptEmitter
from caisse.sales import SalesRepository

logger = logging.getLogger(__name__)


@dataclass
class TerminalSession:
    terminal_id: str
    ledger: PriceLedger
    orchestrator: CheckoutOrchestrator
    last_receipt: Optional[str] = field(default=None)


class TerminalRegistry:

    def __init__(
        self,
        sales: SalesRepository,
        gateway: MpesaGateway,
        receipt_emitter: Optional[ReceiptEmitter] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.sales = sales
        self.gateway = gateway
        self.receipt_emitter = receipt_emitter
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sessions: Dict[str, TerminalSession] = {}

    def get(self, terminal_id: str) -> TerminalSession:
        session = self._sessions.get(terminal_id)
        if session is None:
            ledger = PriceLedger()
            orchestrator = CheckoutOrchestrator(
                ledger,
                self.sales,
                self.gateway,
                receipt_emitter=self.receipt_emitter,
                poll_interval=self.poll_interval,
                timeout=self.timeout,
            )
            session = TerminalSession(terminal_id=terminal_id, ledger=ledger, orchestrator=orchestrator)
            self._sessions[terminal_id] = session
            logger.info("terminals.opened terminal_id=%s", terminal_id)
        return session

    def find(self, terminal_id: str) -> Optional[TerminalSession]:
        """Session existante, sans en ouvrir une nouvelle."""
        return self._sessions.get(terminal_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def close(self, terminal_id: str) -> bool:
        session = self._sessions.pop(terminal_id, None)
        if session is None:
            return False
        session.orchestrator.cancel("Session de caisse fermée")
        logger.info("terminals.closed terminal_id=%s", terminal_id)
        return True

    def close_all(self) -> None:
        for terminal_id in list(self._sessions):
            self.close(terminal_id)
