import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Set

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from .bus import NotificationBus
from .errors import AmbulanceBusy, AmbulanceNotFound, BreakTooEarly
from .models import Ambulance, AmbulanceStatus, as_utc, utcnow

logger = logging.getLogger(__name__)


class BreakScheduler:
    """Grants rest breaks and ends them when their window runs out.

    Each grant schedules a revert task with a fixed deadline. The revert clears
    ``on_break`` whatever happened to the ambulance in between and cannot be
    cancelled. The deadline is stored on the ambulance so ``resume_pending``
    can re-arm reverts after a restart.
    """

    def __init__(
        self,
        engine: Engine,
        bus: NotificationBus,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        break_duration: timedelta = timedelta(hours=2),
        min_shift: timedelta = timedelta(hours=12),
    ):
        self.engine = engine
        self.bus = bus
        self.clock = clock
        self.sleep = sleep
        self.break_duration = break_duration
        self.min_shift = min_shift
        self._tasks: Set[asyncio.Task] = set()

    def request_break(self, ambulance_id: int) -> Ambulance:
        now = self.clock()
        with Session(self.engine) as session:
            ambulance = session.get(Ambulance, ambulance_id)
            if not ambulance:
                raise AmbulanceNotFound(f"Ambulance {ambulance_id} not found", ambulance_id=ambulance_id)
            if ambulance.shift_start is None or as_utc(now) - as_utc(ambulance.shift_start) < self.min_shift:
                raise BreakTooEarly(
                    "Cannot take break yet. Must be on shift for at least "
                    f"{self.min_shift.total_seconds() / 3600:g} hours.",
                    ambulance_id=ambulance_id,
                )
            if ambulance.status != AmbulanceStatus.AVAILABLE:
                raise AmbulanceBusy("Cannot take break while on a call.", ambulance_id=ambulance_id)
            if ambulance.on_break:
                raise AmbulanceBusy("Ambulance is already on break.", ambulance_id=ambulance_id)

            ambulance.on_break = True
            ambulance.break_ends_at = now + self.break_duration
            session.add(ambulance)
            session.commit()
            session.refresh(ambulance)

        logger.info("Break granted to ambulance %s until %s", ambulance_id, ambulance.break_ends_at)
        self.schedule_revert(ambulance_id, ambulance.break_ends_at)
        self.bus.emit(
            "breakUpdate",
            {"ambulanceId": ambulance_id, "onBreak": True, "breakEndsAt": ambulance.break_ends_at.isoformat()},
        )
        return ambulance

    def schedule_revert(self, ambulance_id: int, deadline: datetime) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._revert_at(ambulance_id, deadline))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _revert_at(self, ambulance_id: int, deadline: datetime):
        delay = max(0.0, (as_utc(deadline) - as_utc(self.clock())).total_seconds())
        await self.sleep(delay)
        try:
            self.end_break(ambulance_id)
        except Exception:
            logger.exception("Error ending break for ambulance %s", ambulance_id)
            raise

    def end_break(self, ambulance_id: int) -> Optional[Ambulance]:
        with Session(self.engine) as session:
            ambulance = session.get(Ambulance, ambulance_id)
            if not ambulance:
                logger.warning("Ambulance %s disappeared before its break ended", ambulance_id)
                return None
            ambulance.on_break = False
            ambulance.break_ends_at = None
            session.add(ambulance)
            session.commit()
            session.refresh(ambulance)

        logger.info("Break ended for ambulance %s", ambulance_id)
        self.bus.emit("breakUpdate", {"ambulanceId": ambulance_id, "onBreak": False, "breakEndsAt": None})
        return ambulance

    def resume_pending(self) -> int:
        """Re-arm reverts for breaks that were running when the process stopped."""
        with Session(self.engine) as session:
            stmt = select(Ambulance).where(
                col(Ambulance.on_break).is_(True), col(Ambulance.break_ends_at).is_not(None)
            )
            pending = [(a.id, a.break_ends_at) for a in session.exec(stmt).all()]
        for ambulance_id, deadline in pending:
            self.schedule_revert(ambulance_id, deadline)
        if pending:
            logger.info("Resumed %d scheduled break reverts", len(pending))
        return len(pending)

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        """Cancel outstanding reverts; their deadlines stay on the ambulance rows."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
