"""
Slot lifecycle.

    DRAFT     -> PUBLISHED   publish
    PUBLISHED -> DRAFT       unpublish (never from BOOKED)
    PUBLISHED -> BOOKED      reserve, on booking creation (DRAFT too if allowed)
    BOOKED    -> PUBLISHED   release, while the booking is unconfirmed

Every status change that a concurrent request could race is a single
conditional UPDATE whose WHERE clause carries the expected current status.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import and_, delete, exists, select, update
from sqlalchemy.exc import IntegrityError

from models.booking import Booking, BookingStatus
from models.slot import Slot, SlotStatus
from services.errors import ValidationFailed
from utils.clock import utcnow

MAX_SERIES_DAYS = 366


@dataclass
class BatchResult:
    updated: int = 0
    skipped_ids: list = field(default_factory=list)


@dataclass
class SeriesResult:
    created: int = 0
    existing: int = 0
    skipped_past: int = 0


class SlotLifecycle:
    def __init__(self, session, actor, allow_draft_booking: bool = False):
        self.session = session
        self.actor = actor
        self.allow_draft_booking = allow_draft_booking

    # ---------- booking-side transitions ----------

    def bookable_statuses(self) -> tuple:
        if self.allow_draft_booking:
            return (SlotStatus.PUBLISHED, SlotStatus.DRAFT)
        return (SlotStatus.PUBLISHED,)

    def reserve(self, slot_id: int) -> bool:
        """
        Compare-and-swap to BOOKED. True only for the caller whose UPDATE
        actually flipped the row; a second concurrent caller gets False.
        Runs inside the caller's transaction.
        """
        result = self.session.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.status.in_(self.bookable_statuses()))
            .values(status=SlotStatus.BOOKED, booked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release(self, slot_id: int, booking_id: int) -> bool:
        """
        BOOKED -> PUBLISHED, unless another non-cancelled booking still holds
        the slot. Runs inside the caller's transaction.
        """
        other_active = exists().where(
            and_(
                Booking.slot_id == Slot.id,
                Booking.id != booking_id,
                Booking.status != BookingStatus.CANCELLED,
            )
        )
        result = self.session.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.status == SlotStatus.BOOKED, ~other_active)
            .values(status=SlotStatus.PUBLISHED, booked_at=None, published_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ---------- partner/admin management ----------

    def set_status(self, slot_ids: Iterable[int], status: str) -> BatchResult:
        """
        Bulk publish/unpublish. BOOKED slots are skipped, never errors.
        Returns how many rows were actually updated.
        """
        if status not in (SlotStatus.PUBLISHED, SlotStatus.DRAFT):
            raise ValidationFailed("status must be PUBLISHED or DRAFT", code="INVALID_STATUS")

        ids = list(dict.fromkeys(slot_ids))
        rows = self.session.execute(
            select(Slot.id, Slot.status, Slot.partner_id).where(Slot.id.in_(ids))
        ).all()
        if not rows:
            return BatchResult(updated=0, skipped_ids=ids)

        for partner_id in {r.partner_id for r in rows}:
            self.actor.require_partner(partner_id)

        eligible = [r.id for r in rows if r.status != SlotStatus.BOOKED]
        eligible_set = set(eligible)
        skipped = [i for i in ids if i not in eligible_set]
        if not eligible:
            return BatchResult(updated=0, skipped_ids=skipped)

        result = self.session.execute(
            update(Slot)
            .where(Slot.id.in_(eligible), Slot.status != SlotStatus.BOOKED)
            .values(
                status=status,
                published_at=utcnow() if status == SlotStatus.PUBLISHED else None,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return BatchResult(updated=result.rowcount, skipped_ids=skipped)

    def create_slot(self, partner, start_time: datetime, duration_minutes: int,
                    publish: bool = False) -> tuple[Slot, bool]:
        """
        Idempotent: an existing slot at the same start is returned, and
        promoted DRAFT -> PUBLISHED when publish is requested.
        Returns (slot, created).
        """
        self.actor.require_partner(partner.id)
        self._check_duration(duration_minutes)
        if start_time <= utcnow():
            raise ValidationFailed("Cannot create a slot in the past", code="PAST_TIME")

        existing = self._find_by_start(partner.id, start_time)
        if existing is None:
            slot = self._new_slot(partner.id, start_time, duration_minutes, publish)
            self.session.add(slot)
            try:
                self.session.commit()
                return slot, True
            except IntegrityError:
                # created concurrently by another request
                self.session.rollback()
                existing = self._find_by_start(partner.id, start_time)
                if existing is None:
                    raise

        if publish and existing.status == SlotStatus.DRAFT:
            self.session.execute(
                update(Slot)
                .where(Slot.id == existing.id, Slot.status == SlotStatus.DRAFT)
                .values(status=SlotStatus.PUBLISHED, published_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
            self.session.refresh(existing)
        return existing, False

    def create_series(self, partner, first_day: date, last_day: date, weekdays: Iterable[int],
                      times: Iterable, duration_minutes: int, publish: bool = False) -> SeriesResult:
        """
        weekdays use Python numbering (Monday=0). Existing and past starts are
        skipped. One commit for the whole series.
        """
        self.actor.require_partner(partner.id)
        self._check_duration(duration_minutes)
        if last_day < first_day:
            raise ValidationFailed("endDate must not be before startDate", code="INVALID_RANGE")
        if (last_day - first_day).days > MAX_SERIES_DAYS:
            raise ValidationFailed(f"A series may span at most {MAX_SERIES_DAYS} days", code="INVALID_RANGE")

        wanted_days = set(weekdays)
        times = sorted(set(times))
        now = utcnow()
        out = SeriesResult()

        starts = []
        day = first_day
        while day <= last_day:
            if day.weekday() in wanted_days:
                for t in times:
                    starts.append(datetime.combine(day, t))
            day += timedelta(days=1)

        if not starts:
            return out

        taken = set(
            self.session.execute(
                select(Slot.start_time).where(
                    Slot.partner_id == partner.id,
                    Slot.start_time >= min(starts),
                    Slot.start_time <= max(starts),
                )
            ).scalars()
        )
        for start in starts:
            if start <= now:
                out.skipped_past += 1
                continue
            if start in taken:
                out.existing += 1
                continue
            self.session.add(self._new_slot(partner.id, start, duration_minutes, publish))
            out.created += 1

        self.session.commit()
        return out

    def delete_slots(self, partner, slot_ids: Iterable[int]) -> BatchResult:
        """Deletes DRAFT/PUBLISHED slots of the partner. BOOKED and foreign ids are skipped."""
        self.actor.require_partner(partner.id)
        ids = list(dict.fromkeys(slot_ids))
        guards = (
            Slot.partner_id == partner.id,
            Slot.status.in_((SlotStatus.DRAFT, SlotStatus.PUBLISHED)),
            # slots with booking history stay for the record
            ~exists().where(Booking.slot_id == Slot.id),
        )
        deletable = set(
            self.session.execute(select(Slot.id).where(Slot.id.in_(ids), *guards)).scalars()
        )
        deleted = 0
        if deletable:
            result = self.session.execute(
                delete(Slot)
                .where(Slot.id.in_(deletable), *guards)
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount
        self.session.commit()
        return BatchResult(updated=deleted, skipped_ids=[i for i in ids if i not in deletable])

    # ---------- queries ----------

    def list_for_day(self, partner_id: int, start: datetime, end: datetime,
                     statuses: Optional[Iterable[str]] = None) -> list[Slot]:
        q = select(Slot).where(
            Slot.partner_id == partner_id,
            Slot.start_time >= start,
            Slot.start_time < end,
        )
        if statuses:
            q = q.where(Slot.status.in_(list(statuses)))
        return list(self.session.execute(q.order_by(Slot.start_time.asc())).scalars())

    # ---------- helpers ----------

    def _find_by_start(self, partner_id: int, start_time: datetime) -> Optional[Slot]:
        return self.session.execute(
            select(Slot).where(Slot.partner_id == partner_id, Slot.start_time == start_time)
        ).scalar_one_or_none()

    @staticmethod
    def _check_duration(duration_minutes) -> None:
        if not isinstance(duration_minutes, int) or isinstance(duration_minutes, bool) \
                or duration_minutes <= 0 or duration_minutes > 24 * 60:
            raise ValidationFailed("durationMinutes must be between 1 and 1440", code="INVALID_DURATION")

    @staticmethod
    def _new_slot(partner_id: int, start_time: datetime, duration_minutes: int, publish: bool) -> Slot:
        now = utcnow()
        return Slot(
            partner_id=partner_id,
            start_time=start_time,
            end_time=start_time + timedelta(minutes=duration_minutes),
            status=SlotStatus.PUBLISHED if publish else SlotStatus.DRAFT,
            published_at=now if publish else None,
        )
