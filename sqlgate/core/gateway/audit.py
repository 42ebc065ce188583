import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from pydantic_core import to_jsonable_python
from sqlalchemy import and_, case, delete, extract, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqlgate.core import models
from sqlgate.core.config import COMPLIANCE_FLOOR_DAYS, Settings
from sqlgate.core.correlation import ensure_correlation_id
from sqlgate.core.exceptions import ConfigurationException, ValidationException
from sqlgate.core.schemas import (
    Actor,
    AuditEvent,
    AuditEventOut,
    AuditPage,
    AuditQuery,
    AuditReport,
    AuditReportType,
    AuditResult,
    AuditSeverity,
    DatabaseAuditEvent,
    FieldChange,
    RetentionSweepResult,
    SecurityAuditEvent,
    utc_now,
)

# -----------------------------------------------------------------------------
# AUDIT MODULE - Recorder and append-only store
# Purpose: Buffer one event per attempt off the request path, persist them in
# batches, answer audit queries and reports with row-level visibility, sweep
# expired rows
# Why: A failed audit write must never break the business call, but it must
# never be silent either, so it is escalated to the operational log
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
DEFAULT_WINDOW = timedelta(hours=24)
END_ONLY_WINDOW = timedelta(days=7)
REPORT_WINDOW = timedelta(days=7)
MAX_REPORT_ROWS = 100
ERROR_SAMPLE_LENGTH = 200
ERROR_SAMPLE_ROWS = 10
SECURITY_EVENT_PREFIX = "Security."

SORT_COLUMNS = {
    "Timestamp": models.AuditEventRecord.timestamp,
    "EventType": models.AuditEventRecord.event_type,
    "UserId": models.AuditEventRecord.user_id,
    "Result": models.AuditEventRecord.result,
    "Duration": models.AuditEventRecord.duration_ms,
}


# =========================
# Field diff
# =========================
def get_changed_fields(
    before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]
) -> List[FieldChange]:
    """
    Minimal diff of two field maps.

    A key missing on one side counts as None on that side. Keys keep the
    order of `before`, then keys that only exist in `after`.

    Example:
        get_changed_fields({"A": 1, "B": 2}, {"A": 1, "B": 3})
        -> [FieldChange(field="B", old_value=2, new_value=3)]
    """
    before = before or {}
    after = after or {}

    keys = list(before.keys()) + [k for k in after.keys() if k not in before]
    changes = []
    for key in keys:
        old_value = before.get(key)
        new_value = after.get(key)
        if old_value != new_value:
            changes.append(FieldChange(field=key, old_value=old_value, new_value=new_value))
    return changes


# =========================
# Event -> row
# =========================
def _extra_data(event: AuditEvent) -> Dict[str, Any]:
    extra: Dict[str, Any] = dict(event.additional_data)
    if isinstance(event, DatabaseAuditEvent):
        extra.update(
            operation=event.operation.value,
            stored_procedure_name=event.stored_procedure_name,
            entity_name=event.entity_name,
            entity_id=event.entity_id,
            parameters=event.parameters,
            rows_affected=event.rows_affected,
            success=event.success,
            execution_time_ms=event.execution_time_ms,
        )
        if event.before_data is not None or event.after_data is not None:
            extra["changed_fields"] = [
                change.model_dump() for change in get_changed_fields(event.before_data, event.after_data)
            ]
    elif isinstance(event, SecurityAuditEvent):
        extra.update(
            security_event_type=event.security_event_type.value,
            resource=event.resource,
            authentication_method=event.authentication_method,
            required_permissions=event.required_permissions,
            user_permissions=event.user_permissions,
            missing_permissions=event.get_missing_permissions(),
            risk_score=event.risk_score,
            threat_indicators=event.threat_indicators,
        )
    return to_jsonable_python(extra, fallback=str)


def to_record(event: AuditEvent) -> models.AuditEventRecord:
    resource_type = event.resource_type
    resource_name = event.resource_name
    if isinstance(event, DatabaseAuditEvent):
        resource_type = resource_type or "StoredProcedure"
        resource_name = resource_name or event.stored_procedure_name
    elif isinstance(event, SecurityAuditEvent):
        resource_name = resource_name or event.resource

    return models.AuditEventRecord(
        event_id=event.event_id,
        event_type=event.event_type,
        event_sub_type=event.event_sub_type,
        timestamp=event.timestamp,
        correlation_id=event.correlation_id,
        user_id=event.user_id,
        user_name=event.user_name,
        user_email=event.user_email,
        user_roles=list(event.user_roles),
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        resource_type=resource_type,
        resource_id=event.resource_id,
        resource_name=resource_name,
        action=event.action,
        result=event.result.value,
        error_code=event.error_code,
        error_message=event.error_message,
        duration_ms=event.duration_ms,
        additional_data=_extra_data(event),
        severity=event.severity.value,
        compliance=event.compliance,
        machine_name=event.machine_name,
        process_id=event.process_id,
        thread_id=event.thread_id,
        application_version=event.application_version,
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _count_where(condition):
    return func.sum(case((condition, 1), else_=0))


def _percent(part: Optional[int], total: Optional[int]) -> Optional[float]:
    if not total:
        return None
    return round((part or 0) * 100.0 / total, 2)


def _report_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return _as_utc(value)
    return value


# =========================
# Recorder
# =========================
class AuditSink(Protocol):
    async def append(self, events: Sequence[AuditEvent]) -> None: ...


class AuditRecorder:
    """
    Buffered, fire-and-forget audit writer.

    record() only enqueues and never raises; a background task drains the
    queue in batches. Persistence failures are logged at ERROR together with
    every lost event's log line so the trail can be rebuilt from logs.
    """

    def __init__(
        self,
        sink: AuditSink,
        buffer_size: int = 1000,
        flush_interval: float = 5.0,
        batch_size: int = 100,
    ):
        self._sink = sink
        self._queue: "asyncio.Queue[AuditEvent]" = asyncio.Queue(maxsize=buffer_size)
        self._flush_interval = flush_interval
        self._batch_size = batch_size
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._writing = False
        self._interrupted: List[AuditEvent] = []

    @classmethod
    def from_settings(cls, sink: AuditSink, config: Settings) -> "AuditRecorder":
        return cls(
            sink,
            buffer_size=config.AUDIT_BUFFER_SIZE,
            flush_interval=config.AUDIT_FLUSH_INTERVAL_SECONDS,
        )

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def record(self, event: AuditEvent) -> None:
        try:
            logger.info(event.to_log_string())
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(f"Audit buffer full, event not persisted: {event.to_log_string()}")
        except Exception as e:
            logger.error(f"Audit event could not be queued ({e}): {event.to_log_string()}")

    async def start(self) -> None:
        if self._task is None:
            self._stopping = False
            self._task = asyncio.create_task(self._run(), name="audit-flush")

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """
        Stop the worker and persist whatever is still buffered.

        A batch the worker is already writing gets grace_seconds to finish.
        A batch cut short is written again, or logged event by event when the
        grace period ran out.
        """
        timed_out = False
        if self._task is not None:
            self._stopping = True
            if not self._writing:
                self._task.cancel()
            done, _ = await asyncio.wait({self._task}, timeout=grace_seconds)
            if not done:
                timed_out = True
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        interrupted, self._interrupted = self._interrupted, []
        if interrupted and timed_out:
            self._log_lost(interrupted, f"writer did not finish within {grace_seconds}s of shutdown")
        else:
            await self._write(interrupted)
        await self.flush()

    async def flush(self) -> None:
        while not self._queue.empty():
            await self._write(self._drain(self._batch_size))

    def _drain(self, limit: int) -> List[AuditEvent]:
        batch = []
        while len(batch) < limit:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    async def _run(self) -> None:
        while not self._stopping:
            try:
                first = await asyncio.wait_for(self._queue.get(), timeout=self._flush_interval)
            except asyncio.TimeoutError:
                continue
            batch = [first] + self._drain(self._batch_size - 1)
            self._writing = True
            try:
                await self._write(batch)
            except asyncio.CancelledError:
                # Handed to stop(), which retries or logs it
                self._interrupted = batch
                raise
            finally:
                self._writing = False

    async def _write(self, batch: List[AuditEvent]) -> None:
        if not batch:
            return
        try:
            await self._sink.append(batch)
        except Exception as e:
            self._log_lost(batch, e)

    def _log_lost(self, batch: List[AuditEvent], reason: Any) -> None:
        logger.error(f"Audit persistence failed for {len(batch)} event(s): {reason}")
        for event in batch:
            logger.error(f"Unpersisted audit event: {event.to_log_string()}")


# =========================
# Store
# =========================
@dataclass(frozen=True)
class RetentionPolicy:
    compliance_days: int = 2555
    routine_days: int = COMPLIANCE_FLOOR_DAYS

    def __post_init__(self):
        for key, days in (("compliance_days", self.compliance_days), ("routine_days", self.routine_days)):
            if days < COMPLIANCE_FLOOR_DAYS:
                raise ConfigurationException(
                    key, f"Retention days cannot be less than {COMPLIANCE_FLOOR_DAYS} days for compliance"
                )

    @staticmethod
    def from_settings(config: Settings) -> "RetentionPolicy":
        return RetentionPolicy(
            compliance_days=config.AUDIT_COMPLIANCE_RETENTION_DAYS,
            routine_days=config.AUDIT_ROUTINE_RETENTION_DAYS,
        )


class SqlAuditStore:
    """Append-only audit table. Nothing here updates a row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], elevated_roles: Sequence[str] = ("auditor", "admin")):
        self._session_factory = session_factory
        self._elevated_roles = tuple(elevated_roles)

    def is_elevated(self, viewer: Actor) -> bool:
        return viewer.has_any_role(self._elevated_roles)

    async def append(self, events: Sequence[AuditEvent]) -> None:
        async with self._session_factory() as session:
            try:
                session.add_all([to_record(event) for event in events])
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ===== Query =====

    def _visibility(self, viewer: Actor) -> list:
        # Row-level security: own events only unless elevated
        if self.is_elevated(viewer):
            return []
        return [models.AuditEventRecord.user_id == viewer.user_id]

    def _to_out(self, row: models.AuditEventRecord, viewer: Actor) -> AuditEventOut:
        out = AuditEventOut.model_validate(row)
        updates: Dict[str, Any] = {"timestamp": _as_utc(out.timestamp)}
        if not self.is_elevated(viewer):
            # Diagnostic text is for auditors only
            updates["error_message"] = None
        return out.model_copy(update=updates)

    async def query(self, viewer: Actor, q: AuditQuery, now: Optional[datetime] = None) -> AuditPage:
        """
        Filtered, paginated audit read.

        - no dates: last 24 hours
        - only end date: 7 days back from it
        - page size clamped to 1..1000, unknown sort columns fall back to Timestamp
        """
        now = now or utc_now()
        end_date = q.end_date
        start_date = q.start_date
        if start_date is None and end_date is None:
            end_date = now
            start_date = now - DEFAULT_WINDOW
        elif start_date is None:
            start_date = end_date - END_ONLY_WINDOW
        elif end_date is None:
            end_date = now
        start_date = _as_utc(start_date)
        end_date = _as_utc(end_date)

        page = max(1, q.page)
        page_size = min(max(1, q.page_size), MAX_PAGE_SIZE)
        sort_column = SORT_COLUMNS.get(q.sort_by, models.AuditEventRecord.timestamp)
        descending = (q.sort_direction or "").upper() != "ASC"

        record = models.AuditEventRecord
        conditions = [record.timestamp >= start_date, record.timestamp <= end_date]
        conditions += self._visibility(viewer)
        filters = {
            record.event_type: q.event_type,
            record.user_id: q.user_id,
            record.correlation_id: q.correlation_id,
            record.resource_type: q.resource_type,
            record.resource_id: q.resource_id,
            record.action: q.action,
            record.result: q.result.value if q.result else None,
        }
        conditions += [column == value for column, value in filters.items() if value is not None]

        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(record).where(*conditions))
            order = sort_column.desc() if descending else sort_column.asc()
            result = await session.execute(
                select(record)
                .where(*conditions)
                .order_by(order, record.id.desc() if descending else record.id.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            rows = result.scalars().all()

        return AuditPage(
            items=[self._to_out(row, viewer) for row in rows],
            total=total or 0,
            page=page,
            page_size=page_size,
            start_date=start_date,
            end_date=end_date,
        )

    async def by_correlation_id(self, viewer: Actor, correlation_id: str) -> List[AuditEventOut]:
        record = models.AuditEventRecord
        conditions = [record.correlation_id == correlation_id] + self._visibility(viewer)
        async with self._session_factory() as session:
            result = await session.execute(
                select(record).where(*conditions).order_by(record.timestamp.asc(), record.id.asc())
            )
            rows = result.scalars().all()
        return [self._to_out(row, viewer) for row in rows]

    # ===== Reports =====

    async def report(
        self,
        viewer: Actor,
        report_type: Union[str, AuditReportType],
        *,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        user_id: Optional[str] = None,
        top_n: int = 10,
        now: Optional[datetime] = None,
    ) -> AuditReport:
        """
        Aggregated view of the trail under the same visibility rule as query().

        - no dates: last 7 days
        - top_n clamped to 1..100
        - error message samples only for elevated viewers

        Raises:
            ValidationException: unknown report type.
        """
        try:
            report_type = AuditReportType(report_type)
        except ValueError:
            raise ValidationException(
                errors={"report_type": [f"Must be one of: {', '.join(t.value for t in AuditReportType)}"]}
            )

        now = now or utc_now()
        end_date = _as_utc(end_date or now)
        start_date = _as_utc(start_date or end_date - REPORT_WINDOW)
        top_n = min(max(1, top_n), MAX_REPORT_ROWS)

        record = models.AuditEventRecord
        conditions = [record.timestamp >= start_date, record.timestamp <= end_date]
        conditions += self._visibility(viewer)
        if user_id is not None:
            conditions.append(record.user_id == user_id)

        builder = {
            AuditReportType.SUMMARY: self._summary_sections,
            AuditReportType.USER_ACTIVITY: self._user_activity_sections,
            AuditReportType.SECURITY_EVENTS: self._security_sections,
            AuditReportType.FAILURE_ANALYSIS: self._failure_sections,
            AuditReportType.RESOURCE_USAGE: self._resource_sections,
        }[report_type]

        async with self._session_factory() as session:
            sections = await builder(session, conditions, top_n, self.is_elevated(viewer))

        return AuditReport(
            report_type=report_type,
            start_date=start_date,
            end_date=end_date,
            user_id=user_id,
            top_n=top_n,
            sections=sections,
        )

    async def _rows(self, session: AsyncSession, statement) -> List[Dict[str, Any]]:
        result = await session.execute(statement)
        return [
            {key: _report_value(value) for key, value in row.items()}
            for row in result.mappings().all()
        ]

    async def _summary_sections(self, session, conditions, top_n, elevated):
        record = models.AuditEventRecord
        summary = await self._rows(
            session,
            select(
                func.count().label("total_events"),
                func.count(record.user_id.distinct()).label("unique_users"),
                func.count(record.correlation_id.distinct()).label("unique_operations"),
                _count_where(record.result == AuditResult.SUCCESS.value).label("success_count"),
                _count_where(record.result == AuditResult.FAILURE.value).label("failure_count"),
                _count_where(record.result == AuditResult.PARTIAL_SUCCESS.value).label("partial_success_count"),
                func.avg(record.duration_ms).label("avg_duration_ms"),
                func.max(record.duration_ms).label("max_duration_ms"),
                func.min(record.timestamp).label("earliest_event"),
                func.max(record.timestamp).label("latest_event"),
            ).where(*conditions),
        )
        total = summary[0]["total_events"] or 0
        summary[0]["success_rate"] = _percent(summary[0]["success_count"], total)

        event_count = func.count().label("event_count")
        by_type = await self._rows(
            session,
            select(record.event_type, event_count, func.avg(record.duration_ms).label("avg_duration_ms"))
            .where(*conditions)
            .group_by(record.event_type)
            .order_by(event_count.desc(), record.event_type),
        )
        for row in by_type:
            row["percentage"] = _percent(row["event_count"], total)
        return {"summary": summary, "by_event_type": by_type}

    async def _user_activity_sections(self, session, conditions, top_n, elevated):
        record = models.AuditEventRecord
        total_actions = func.count().label("total_actions")
        users = await self._rows(
            session,
            select(
                record.user_id,
                record.user_name,
                total_actions,
                func.count(record.event_type.distinct()).label("unique_event_types"),
                _count_where(record.result == AuditResult.SUCCESS.value).label("success_count"),
                _count_where(record.result == AuditResult.FAILURE.value).label("failure_count"),
                func.avg(record.duration_ms).label("avg_duration_ms"),
                func.min(record.timestamp).label("first_activity"),
                func.max(record.timestamp).label("last_activity"),
            )
            .where(*conditions)
            .group_by(record.user_id, record.user_name)
            .order_by(total_actions.desc(), record.user_id)
            .limit(top_n),
        )
        for row in users:
            row["success_rate"] = _percent(row["success_count"], row["total_actions"])

        hour = extract("hour", record.timestamp).label("hour_of_day")
        hourly = await self._rows(
            session,
            select(
                hour,
                func.count().label("event_count"),
                func.avg(record.duration_ms).label("avg_duration_ms"),
            )
            .where(*conditions)
            .group_by("hour_of_day")
            .order_by("hour_of_day"),
        )
        for row in hourly:
            row["hour_of_day"] = int(row["hour_of_day"])
        return {"users": users, "hourly": hourly}

    async def _security_sections(self, session, conditions, top_n, elevated):
        record = models.AuditEventRecord
        conditions = conditions + [record.event_type.like(f"{SECURITY_EVENT_PREFIX}%")]

        event_count = func.count().label("event_count")
        events = await self._rows(
            session,
            select(
                record.event_type,
                record.action,
                record.result,
                event_count,
                func.count(record.user_id.distinct()).label("unique_users"),
                func.count(record.ip_address.distinct()).label("unique_ips"),
            )
            .where(*conditions)
            .group_by(record.event_type, record.action, record.result)
            .order_by(event_count.desc(), record.event_type)
            .limit(top_n),
        )

        failure_count = func.count().label("failure_count")
        failures = await self._rows(
            session,
            select(
                record.user_id,
                record.user_name,
                failure_count,
                func.count(record.ip_address.distinct()).label("unique_ips"),
                func.max(record.timestamp).label("last_failure"),
            )
            .where(*conditions, record.result == AuditResult.FAILURE.value)
            .group_by(record.user_id, record.user_name)
            .order_by(failure_count.desc(), record.user_id)
            .limit(top_n),
        )
        return {"events": events, "failures_by_user": failures}

    async def _failure_sections(self, session, conditions, top_n, elevated):
        record = models.AuditEventRecord
        conditions = conditions + [record.result == AuditResult.FAILURE.value]

        failure_count = func.count().label("failure_count")
        failures = await self._rows(
            session,
            select(
                record.event_type,
                record.action,
                record.error_code,
                failure_count,
                func.count(record.user_id.distinct()).label("affected_users"),
                func.avg(record.duration_ms).label("avg_duration_ms"),
                func.min(record.timestamp).label("first_occurrence"),
                func.max(record.timestamp).label("last_occurrence"),
            )
            .where(*conditions)
            .group_by(record.event_type, record.action, record.error_code)
            .order_by(failure_count.desc(), record.event_type)
            .limit(top_n),
        )
        sections = {"failures": failures}

        if elevated:
            sample = func.substr(record.error_message, 1, ERROR_SAMPLE_LENGTH).label("error_message_sample")
            occurrences = func.count().label("occurrence_count")
            sections["error_messages"] = await self._rows(
                session,
                select(record.error_code, sample, occurrences)
                .where(*conditions, record.error_message.is_not(None))
                .group_by(record.error_code, "error_message_sample")
                .order_by(occurrences.desc())
                .limit(ERROR_SAMPLE_ROWS),
            )
        return sections

    async def _resource_sections(self, session, conditions, top_n, elevated):
        record = models.AuditEventRecord
        access_count = func.count().label("access_count")
        resources = await self._rows(
            session,
            select(
                record.resource_type,
                record.resource_name,
                access_count,
                func.count(record.user_id.distinct()).label("unique_users"),
                func.count(record.action.distinct()).label("unique_actions"),
                func.avg(record.duration_ms).label("avg_duration_ms"),
                func.sum(record.duration_ms).label("total_duration_ms"),
            )
            .where(*conditions, record.resource_type.is_not(None))
            .group_by(record.resource_type, record.resource_name)
            .order_by(access_count.desc(), record.resource_type)
            .limit(top_n),
        )

        day = func.date(record.timestamp).label("access_date")
        daily_count = func.count().label("access_count")
        by_day = await self._rows(
            session,
            select(
                day,
                record.resource_type,
                daily_count,
                func.count(record.resource_id.distinct()).label("unique_resources"),
                func.count(record.user_id.distinct()).label("unique_users"),
            )
            .where(*conditions, record.resource_type.is_not(None))
            .group_by("access_date", record.resource_type)
            .order_by(day.desc(), record.resource_type),
        )
        return {"resources": resources, "access_by_day": by_day}

    # ===== Retention =====

    async def purge_expired(
        self,
        policy: RetentionPolicy,
        *,
        actor_id: str,
        dry_run: bool = False,
        batch_size: int = 1000,
        max_execution_seconds: float = 300,
        now: Optional[datetime] = None,
    ) -> RetentionSweepResult:
        """
        Delete events older than their retention window.

        Compliance events use the long window, routine events the short one.
        Deletes run in batches and stop once max_execution_seconds is spent.
        Every sweep, dry runs included, appends one Maintenance event.
        """
        now = now or utc_now()
        compliance_cutoff = now - timedelta(days=policy.compliance_days)
        routine_cutoff = now - timedelta(days=policy.routine_days)

        record = models.AuditEventRecord
        expired = or_(
            and_(record.compliance.is_(True), record.timestamp < compliance_cutoff),
            and_(record.compliance.is_(False), record.timestamp < routine_cutoff),
        )

        started = time.monotonic()
        deleted = 0
        timed_out = False
        async with self._session_factory() as session:
            matched = await session.scalar(select(func.count()).select_from(record).where(expired)) or 0

            if not dry_run:
                while True:
                    if time.monotonic() - started > max_execution_seconds:
                        timed_out = True
                        break
                    ids = (
                        await session.execute(select(record.id).where(expired).limit(batch_size))
                    ).scalars().all()
                    if not ids:
                        break
                    await session.execute(delete(record).where(record.id.in_(ids)))
                    await session.commit()
                    deleted += len(ids)

        outcome = RetentionSweepResult(
            compliance_cutoff=compliance_cutoff,
            routine_cutoff=routine_cutoff,
            matched=matched,
            deleted=deleted,
            dry_run=dry_run,
            timed_out=timed_out,
        )

        maintenance = AuditEvent(
            event_type="Maintenance",
            event_sub_type="AuditLogCleanup",
            correlation_id=ensure_correlation_id(),
            user_id=actor_id,
            action="DryRunCleanup" if dry_run else "Cleanup",
            result=AuditResult.PARTIAL_SUCCESS if timed_out else AuditResult.SUCCESS,
            duration_ms=int((time.monotonic() - started) * 1000),
            severity=AuditSeverity.WARNING if deleted else AuditSeverity.INFORMATION,
            compliance=True,
            additional_data={
                "compliance_retention_days": policy.compliance_days,
                "routine_retention_days": policy.routine_days,
                "batch_size": batch_size,
                "matched": matched,
                "deleted": deleted,
            },
        )
        await self.append([maintenance])
        logger.info(
            f"Audit retention sweep matched={matched} deleted={deleted} dry_run={dry_run} timed_out={timed_out}"
        )
        return outcome
