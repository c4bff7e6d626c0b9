"""Dependent entities settled together with a payment.

Each payment kind owns one table with its own status vocabulary. The state
machine only ever calls `mark_settled` / `mark_failed`; every write is a
conditional UPDATE on the entity's current status so a stale or repeated call
changes nothing and raises instead.
"""

from datetime import timedelta

from sqlalchemy import update

from momorecon.common.clock import utcnow
from momorecon.common.errors import MatchConflict, NotFound
from momorecon.services.settlement.models import Donation, Membership, Payment, ShopOrder, TicketOrder


MEMBERSHIP_TERM = timedelta(days=365)


class DependentEntity:
    """Base adapter: one payment kind, one table, two transitions."""

    kind = ""
    model = None
    foreign_key = ""
    pending_status = "pending"
    settled_status = ""
    failed_status = "failed"

    def entity_id(self, payment: Payment) -> str:
        entity_id = getattr(payment, self.foreign_key)
        if not entity_id:
            raise NotFound(f"payment {payment.id} has no {self.kind} reference")
        return entity_id

    def settled_values(self, payment: Payment, reference: str | None) -> dict:
        return {}

    def _move(self, db, payment: Payment, from_statuses: tuple[str, ...], values: dict) -> None:
        entity_id = self.entity_id(payment)
        result = db.execute(
            update(self.model)
            .where(self.model.id == entity_id, self.model.status.in_(from_statuses))
            .values(**values)
        )
        if result.rowcount != 1:
            if db.get(self.model, entity_id) is None:
                raise NotFound(f"{self.kind} {entity_id} not found")
            raise MatchConflict(f"{self.kind} {entity_id} is not in {'/'.join(from_statuses)}")

    def mark_settled(self, db, payment: Payment, reference: str | None) -> None:
        values = {"status": self.settled_status, **self.settled_values(payment, reference)}
        self._move(db, payment, (self.pending_status,), values)

    def mark_failed(self, db, payment: Payment, reason: str) -> None:
        # Reversal of a confirmed payment starts from the settled status.
        self._move(db, payment, (self.pending_status, self.settled_status), {"status": self.failed_status})


class TicketOrders(DependentEntity):
    kind = "ticket"
    model = TicketOrder
    foreign_key = "ticket_order_id"
    settled_status = "paid"

    def settled_values(self, payment, reference):
        return {"sms_ref": reference, "paid_at": utcnow()}


class ShopOrders(DependentEntity):
    kind = "shop"
    model = ShopOrder
    foreign_key = "shop_order_id"
    settled_status = "confirmed"
    failed_status = "cancelled"

    def settled_values(self, payment, reference):
        return {"confirmed_at": utcnow()}


class Memberships(DependentEntity):
    kind = "membership"
    model = Membership
    foreign_key = "membership_id"
    settled_status = "active"

    def settled_values(self, payment, reference):
        started_at = utcnow()
        return {"started_at": started_at, "expires_at": started_at + MEMBERSHIP_TERM}


class Donations(DependentEntity):
    kind = "donation"
    model = Donation
    foreign_key = "donation_id"
    settled_status = "confirmed"


def default_dependents() -> dict[str, DependentEntity]:
    return {adapter.kind: adapter for adapter in (TicketOrders(), ShopOrders(), Memberships(), Donations())}
