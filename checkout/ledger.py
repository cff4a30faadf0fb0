"""Idempotency ledger: the append-only record of already-processed payment events.

`try_claim` is the only synchronization primitive of the checkout core. It is
a single INSERT against the primary key of `idempotency_records`; the
database's uniqueness enforcement decides which of two concurrent claimers
wins, so no check-then-insert race is possible.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from checkout.exceptions import StoreUnavailable
from checkout.models import IdempotencyRecord

logger = logging.getLogger(__name__)


def make_key(provider: str, provider_order_id: str) -> str:
    return f"{provider}:{provider_order_id}"


def webhook_key(provider: str, event_id: Optional[str], provider_order_id: str) -> str:
    """Provider event id when the webhook carries one, else the order-scoped key."""
    if event_id:
        return f"{provider}:event:{event_id}"
    return make_key(provider, provider_order_id)


class IdempotencyLedger:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def try_claim(self, key: str) -> bool:
        """Returns True if this call is the first to claim `key`."""
        db = self.session_factory()
        try:
            db.add(IdempotencyRecord(key=key))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            logger.info("Idempotency key %s already claimed", key)
            return False
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailable(f"Idempotency ledger unavailable: {e}") from e
        finally:
            db.close()

    def is_claimed(self, key: str) -> bool:
        """Read-only probe; `try_claim` remains the authority."""
        db = self.session_factory()
        try:
            return db.get(IdempotencyRecord, key) is not None
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Idempotency ledger unavailable: {e}") from e
        finally:
            db.close()
