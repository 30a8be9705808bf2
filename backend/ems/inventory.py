import json
import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .bus import NotificationBus
from .errors import AmbulanceNotFound, NotificationNotFound, SupplyReportError
from .models import MAX_QUANTITY, Ambulance, InventoryItem, Notification, NotificationStatus, utcnow
from .schemas import StockLevel

logger = logging.getLogger(__name__)


def parse_supply_usage(raw: Any) -> Dict[str, int]:
    """Turn a supply-usage report into ``{supply_name: units_used}``.

    Accepts a mapping or a JSON object string; ``None`` or an empty string
    means nothing was used.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise SupplyReportError(f"Supply usage is not valid JSON: {e}") from e
    if not isinstance(raw, Mapping):
        raise SupplyReportError("Supply usage must be an object of supply name to quantity")

    usage: Dict[str, int] = {}
    for name, used in raw.items():
        if not isinstance(name, str) or not name.strip():
            raise SupplyReportError("Supply names must be non-empty strings")
        if isinstance(used, bool) or not isinstance(used, int):
            raise SupplyReportError(f"Quantity for {name!r} must be an integer", supply_name=name)
        if used < 0:
            raise SupplyReportError(f"Quantity for {name!r} must not be negative", supply_name=name)
        if used > MAX_QUANTITY:
            raise SupplyReportError(f"Quantity for {name!r} is out of range", supply_name=name)
        usage[name.strip()] = used
    return usage


class InventoryMonitor:
    """Onboard stock per ambulance and low-supply notifications."""

    def __init__(self, engine: Engine, bus: NotificationBus, clock: Callable = utcnow):
        self.engine = engine
        self.bus = bus
        self.clock = clock

    def set_stock(self, ambulance_id: int, level: StockLevel) -> InventoryItem:
        with Session(self.engine) as session:
            if not session.get(Ambulance, ambulance_id):
                raise AmbulanceNotFound(f"Ambulance {ambulance_id} not found", ambulance_id=ambulance_id)
            item = session.exec(
                select(InventoryItem).where(
                    InventoryItem.ambulance_id == ambulance_id,
                    InventoryItem.supply_name == level.supply_name,
                )
            ).first()
            if item is None:
                item = InventoryItem(ambulance_id=ambulance_id, supply_name=level.supply_name)
            item.quantity = level.quantity
            item.par_level = level.par_level
            session.add(item)
            session.commit()
            session.refresh(item)
            return item

    def stock_for(self, ambulance_id: int) -> List[InventoryItem]:
        with Session(self.engine) as session:
            stmt = select(InventoryItem).where(InventoryItem.ambulance_id == ambulance_id)
            return list(session.exec(stmt).all())

    def consume(self, ambulance_id: Optional[int], usage: Dict[str, int]) -> List[Notification]:
        """Decrement stock for a completed call and raise one notification per
        supply left under its par level.

        Rows that do not exist are skipped and a failing row never stops the
        rest of the batch; both are only logged.
        """
        if ambulance_id is None:
            if usage:
                logger.warning("Supply usage reported for an unassigned request; nothing consumed")
            return []

        raised = []
        for supply_name, used in usage.items():
            try:
                notification = self._consume_one(ambulance_id, supply_name, used)
            except (SQLAlchemyError, OverflowError):
                logger.exception("Error updating %s for ambulance %s", supply_name, ambulance_id)
                continue
            if notification is not None:
                raised.append(notification)
                self.bus.emit(
                    "newNotification",
                    {
                        "ambulanceId": ambulance_id,
                        "supplyName": supply_name,
                        "currentQuantity": notification.current_quantity,
                        "parLevel": notification.par_level,
                        "timestamp": notification.timestamp.isoformat(),
                    },
                )
        return raised

    def _consume_one(self, ambulance_id: int, supply_name: str, used: int) -> Optional[Notification]:
        with Session(self.engine) as session:
            result = session.exec(
                update(InventoryItem)
                .where(
                    InventoryItem.ambulance_id == ambulance_id,
                    InventoryItem.supply_name == supply_name,
                )
                .values(quantity=InventoryItem.quantity - used)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning("No %s stock row for ambulance %s; skipped", supply_name, ambulance_id)
                return None

            item = session.exec(
                select(InventoryItem).where(
                    InventoryItem.ambulance_id == ambulance_id,
                    InventoryItem.supply_name == supply_name,
                )
            ).one()
            logger.info("Updated %s for ambulance %s: %s left", supply_name, ambulance_id, item.quantity)
            if item.quantity < 0:
                logger.warning(
                    "%s on ambulance %s is over-consumed (%s); reconcile stock", supply_name, ambulance_id, item.quantity
                )

            notification = None
            if item.quantity < item.par_level:
                notification = Notification(
                    ambulance_id=ambulance_id,
                    supply_name=supply_name,
                    current_quantity=item.quantity,
                    par_level=item.par_level,
                    timestamp=self.clock(),
                )
                session.add(notification)
            session.commit()

            if notification is not None:
                session.refresh(notification)
                logger.info("Notification created for low %s on ambulance %s", supply_name, ambulance_id)
            return notification

    def unread(self) -> List[Notification]:
        with Session(self.engine) as session:
            stmt = select(Notification).where(Notification.status == NotificationStatus.UNREAD.value)
            return list(session.exec(stmt).all())

    def mark_read(self, notification_id: int) -> Notification:
        with Session(self.engine) as session:
            notification = session.get(Notification, notification_id)
            if not notification:
                raise NotificationNotFound(
                    f"Notification {notification_id} not found", notification_id=notification_id
                )
            notification.status = NotificationStatus.READ.value
            session.add(notification)
            session.commit()
            session.refresh(notification)
            return notification
