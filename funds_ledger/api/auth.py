"""
Authentication and component wiring dependencies
"""

import hmac
from typing import Optional

import jwt
from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..accounts import LedgerStore
from ..amortization import LoanAmortizationEngine
from ..audit import AuditTrail
from ..auto_payment import AutoPaymentManager
from ..compensation import CompensationLog
from ..config import get_config
from ..errors import AuthError
from ..late_fees import LateFeeAssessor
from ..loans import LoanStore
from ..notifications import NotificationService, WebhookChannelProvider
from ..payments import LoanPaymentProcessor
from ..payoff import EarlyPayoffCalculator
from ..references import ReferenceRegistry
from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface
from ..transfers import TransferProcessor
from ..wires import WireStore

security = HTTPBearer(auto_error=False)


class BankingSystem:
    """Every component wired to one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None):
        config = get_config()
        if storage is None:
            storage = SQLiteStorage(config.database_path) if config.use_sqlite else InMemoryStorage()
        self.storage = storage

        self.audit_trail = AuditTrail(self.storage)
        self.notifications = NotificationService(self.storage)
        if config.notification_webhook_url:
            self.notifications.register_provider(WebhookChannelProvider(
                config.notification_webhook_url, timeout=config.notification_webhook_timeout
            ))

        self.ledger = LedgerStore(self.storage, max_retries=config.balance_update_max_retries)
        self.compensation = CompensationLog(
            self.storage, self.ledger, self.audit_trail,
            max_retries=config.balance_update_max_retries
        )
        self.registry = ReferenceRegistry(self.storage)
        self.wire_store = WireStore(self.storage)
        self.loan_store = LoanStore(self.storage)

        self.transfer_processor = TransferProcessor(
            self.ledger, self.wire_store, self.registry, self.compensation,
            self.audit_trail, self.notifications
        )
        self.amortization_engine = LoanAmortizationEngine()
        self.payoff_calculator = EarlyPayoffCalculator(
            self.loan_store, self.ledger, self.compensation, self.audit_trail, self.notifications
        )
        self.payment_processor = LoanPaymentProcessor(
            self.loan_store, self.ledger, self.compensation, self.audit_trail, self.notifications
        )
        self.late_fee_assessor = LateFeeAssessor(
            self.loan_store, self.compensation, self.audit_trail, self.notifications
        )
        self.auto_payment_manager = AutoPaymentManager(
            self.loan_store, self.ledger, self.payment_processor, self.audit_trail, self.notifications
        )


def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.system


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    """Dependency that validates the bearer JWT and returns its subject"""
    if not credentials:
        raise AuthError("Not authenticated")
    config = get_config()
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token")
    return user_id


def require_system_token(x_system_token: Optional[str] = Header(None)) -> None:
    """Guards scheduled-job endpoints"""
    expected = get_config().system_token
    if not x_system_token or not hmac.compare_digest(x_system_token.encode(), expected.encode()):
        raise AuthError("Invalid system token")
