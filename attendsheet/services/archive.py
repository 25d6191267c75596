"""
Archive reconciliation.

Signed confirmation records are archived as one PNG per employee per month
under ``{ARCHIVE_PREFIX}/{month}/{employee_name}-{month}.png``. ``reconcile``
diffs a sheet's signed records against the store listing and feeds the
missing ones to a single-worker queue, which renders and uploads them one at
a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from io import BytesIO
from typing import Protocol
from urllib.parse import quote

import httpx
from PIL import Image, ImageDraw, ImageFont
from sqlalchemy import select

from attendsheet.core.clock import ensure_utc
from attendsheet.core.exceptions import (ArchiveStoreError, RecordNotFoundError,
                                         SheetNotFoundError)
from attendsheet.db.session import SessionFactory
from attendsheet.models.confirmation import (AUTO_CONFIRMED, CONFIRMED,
                                             ConfirmationRecord)
from attendsheet.models.sheet import Sheet
from attendsheet.schemas.results import ReconcileResult, RecordFailure
from attendsheet.services.audit import AuditSink

logger = logging.getLogger(__name__)

SIGNED_STATUSES = (CONFIRMED, AUTO_CONFIRMED)


def archive_prefix(root: str, month: str) -> str:
    return f"{root.rstrip('/')}/{month}/"


def archive_key(root: str, month: str, employee_name: str) -> str:
    return f"{archive_prefix(root, month)}{employee_name}-{month}.png"


# ── Store contract ──────────────────────────────────────────────────
class ArchiveStore(Protocol):
    async def list(self, prefix: str) -> list[str]: ...

    async def upload(self, key: str, data: bytes) -> None: ...

    async def delete(self, keys: list[str]) -> None: ...


class HttpArchiveStore:
    """Object store reached over HTTP.

    ``GET /list?prefix=`` returns ``{"success": true, "data": {"keys": [...]}}``;
    ``PUT /objects/{key}`` stores a body; ``POST /delete`` removes ``{"keys": [...]}``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ArchiveStoreError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ArchiveStoreError(f"{method} {path} returned HTTP {resp.status_code}")
        return resp

    async def list(self, prefix: str) -> list[str]:
        resp = await self._request("GET", "/list", params={"prefix": prefix})
        try:
            body = resp.json()
        except ValueError as exc:
            raise ArchiveStoreError("listing returned a non-JSON body") from exc
        if isinstance(body, dict) and body.get("success") is False:
            raise ArchiveStoreError(f"listing rejected: {body.get('message') or 'unknown error'}")
        data = body.get("data", body) if isinstance(body, dict) else body
        keys = data.get("keys", []) if isinstance(data, dict) else data
        return [str(k) for k in keys or []]

    async def upload(self, key: str, data: bytes) -> None:
        await self._request(
            "PUT",
            f"/objects/{quote(key)}",
            content=data,
            headers={"Content-Type": "image/png"},
        )

    async def delete(self, keys: list[str]) -> None:
        if keys:
            await self._request("POST", "/delete", json={"keys": keys})


# ── Rendering ───────────────────────────────────────────────────────
def _load_font(font_path: str | None, size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    if font_path:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError:
            logger.warning("Archive font %s could not be loaded; using default", font_path)
    return ImageFont.load_default()


def _drawable(text: str, font) -> str:
    # bitmap fonts only cover latin-1
    if isinstance(font, ImageFont.FreeTypeFont):
        return text
    return text.encode("latin-1", "replace").decode("latin-1")


def archive_lines(record: ConfirmationRecord, sheet_title: str) -> list[str]:
    m = record.metrics or {}
    confirmed_at = ensure_utc(record.confirmed_at)
    lines = [
        sheet_title,
        f"{record.employee_name} ({record.employee_id})  {record.department or '-'}  {record.month}",
        "",
        f"出勤天数: {m.get('attended_days', 0)}",
        f"迟到: {m.get('late_count', 0)} 次 / {m.get('late_minutes', 0):g} 分钟",
        f"豁免后迟到: {m.get('exempted_late_minutes', 0):g} 分钟",
        f"缺卡: {m.get('missing_count', 0)}  旷工: {m.get('absenteeism_count', 0)}",
        f"全勤: {'是' if m.get('is_full_attendance') else '否'}",
        f"绩效扣款: {m.get('performance_penalty', 0):g}",
    ]
    for leave_type, hours in sorted((m.get("leave_hours") or {}).items()):
        lines.append(f"{leave_type}: {hours:g} 小时")
    lines.append("")
    lines.append(f"确认方式: {record.confirm_type or '-'}")
    if confirmed_at:
        lines.append(f"确认时间: {confirmed_at:%Y/%m/%d %H:%M} UTC")
    if record.signature and record.confirm_type == "auto":
        lines.append(record.signature)
    return lines


def render_archive_png(
    record: ConfirmationRecord,
    sheet_title: str,
    font_path: str | None = None,
) -> bytes:
    font = _load_font(font_path, 22)
    lines = archive_lines(record, sheet_title)
    line_height = 34
    width = 900
    height = 60 + line_height * len(lines)

    img = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(img)
    draw.rectangle((0, 0, width - 1, height - 1), outline=(180, 180, 180))
    y = 30
    for line in lines:
        draw.text((40, y), _drawable(line, font), fill=(20, 20, 20), font=font)
        y += line_height

    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


# ── Queue ───────────────────────────────────────────────────────────
@dataclass
class _Batch:
    result: ReconcileResult
    actor: str
    company_id: str
    future: asyncio.Future
    on_complete: Callable[[ReconcileResult], None] | None
    remaining: int = 0


@dataclass
class ArchiveJob:
    record_id: int
    employee_id: str
    batch: _Batch = field(repr=False)


class ArchiveQueue:
    """One ``asyncio.Queue`` drained by exactly one worker task."""

    def __init__(self, handler: Callable[[ArchiveJob], Awaitable[None]]) -> None:
        self._handler = handler
        self._queue: asyncio.Queue[ArchiveJob] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    def enqueue(self, job: ArchiveJob) -> None:
        self._queue.put_nowait(job)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._handler(job)
            except Exception:
                logger.exception("Archive job for record %s crashed", job.record_id)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    async def shutdown(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


# ── Reconciler ──────────────────────────────────────────────────────
class ArchiveReconciler:
    def __init__(
        self,
        session_factory: SessionFactory,
        store: ArchiveStore,
        audit: AuditSink,
        prefix: str,
        font_path: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._audit = audit
        self._prefix = prefix
        self._font_path = font_path
        self.queue = ArchiveQueue(self._process)
        self._discards: set[asyncio.Task] = set()

    async def reconcile(
        self,
        sheet_id: int,
        actor: str,
        on_complete: Callable[[ReconcileResult], None] | None = None,
    ) -> asyncio.Future:
        """Queue every signed record of *sheet_id* missing from the store.

        Returns a future resolved with the ``ReconcileResult`` once the last
        queued item has been processed.
        """
        async with self._session_factory() as session:
            sheet = await session.get(Sheet, sheet_id)
            if sheet is None:
                raise SheetNotFoundError(sheet_id)
            result = await session.execute(
                select(ConfirmationRecord)
                .where(
                    ConfirmationRecord.sheet_id == sheet_id,
                    ConfirmationRecord.confirm_status.in_(SIGNED_STATUSES),
                    ConfirmationRecord.signature.is_not(None),
                )
                .order_by(ConfirmationRecord.id)
            )
            signed = list(result.scalars().all())
            month, company_id = sheet.month, sheet.company_id

        outcome = ReconcileResult(sheet_id=sheet_id, month=month, signed=len(signed))
        try:
            existing = {k.rsplit("/", 1)[-1] for k in await self._store.list(archive_prefix(self._prefix, month))}
            missing = [r for r in signed if f"{r.employee_name}-{month}.png" not in existing]
        except ArchiveStoreError as exc:
            logger.warning("Archive listing for %s failed, re-archiving all signed: %s", month, exc)
            outcome.listing_failed = True
            missing = signed

        outcome.queued = len(missing)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        batch = _Batch(
            result=outcome,
            actor=actor,
            company_id=company_id,
            future=future,
            on_complete=on_complete,
            remaining=len(missing),
        )
        if not missing:
            logger.info("Archive for sheet %s is up to date (%d signed)", sheet_id, len(signed))
            self._finish(batch, audit=False)
            return future

        logger.info("Queued %d archive item(s) for sheet %s", len(missing), sheet_id)
        for record in missing:
            self.queue.enqueue(ArchiveJob(record.id, record.employee_id, batch))
        return future

    async def _process(self, job: ArchiveJob) -> None:
        batch = job.batch
        try:
            async with self._session_factory() as session:
                record = await session.get(ConfirmationRecord, job.record_id)
                sheet = await session.get(Sheet, record.sheet_id) if record else None
            if record is None or sheet is None:
                raise RecordNotFoundError(job.record_id)
            data = render_archive_png(record, sheet.title, self._font_path)
            await self._store.upload(archive_key(self._prefix, record.month, record.employee_name), data)
            batch.result.uploaded += 1
        except (ArchiveStoreError, RecordNotFoundError, OSError) as exc:
            logger.warning("Archiving record %s failed: %s", job.record_id, exc)
            batch.result.failed.append(
                RecordFailure(record_id=job.record_id, employee_id=job.employee_id, error=str(exc))
            )
        except Exception as exc:
            logger.exception("Unexpected error archiving record %s", job.record_id)
            batch.result.failed.append(
                RecordFailure(record_id=job.record_id, employee_id=job.employee_id, error=repr(exc))
            )
        finally:
            batch.remaining -= 1
            if batch.remaining == 0:
                self._finish(batch, audit=True)

    def _finish(self, batch: _Batch, audit: bool) -> None:
        result = batch.result
        if audit:
            self._audit.append(
                actor=batch.actor,
                action="ARCHIVE",
                target=f"sheet:{result.sheet_id}",
                company_id=batch.company_id,
                details={
                    "queued": result.queued,
                    "uploaded": result.uploaded,
                    "failed": [f.record_id for f in result.failed],
                    "listing_failed": result.listing_failed,
                },
            )
            logger.info(
                "Archive batch for sheet %s done: %d uploaded, %d failed",
                result.sheet_id, result.uploaded, len(result.failed),
            )
        if not batch.future.done():
            batch.future.set_result(result)
        if batch.on_complete is not None:
            try:
                batch.on_complete(result)
            except Exception:
                logger.exception("Archive completion callback failed")

    # ── Recall cleanup ──────────────────────────────────────────────
    def discard(self, month: str, employee_name: str) -> None:
        """Delete a recalled record's archive in the background."""
        key = archive_key(self._prefix, month, employee_name)
        task = asyncio.get_running_loop().create_task(self._delete(key))
        self._discards.add(task)
        task.add_done_callback(self._discards.discard)

    async def _delete(self, key: str) -> None:
        try:
            await self._store.delete([key])
            logger.info("Deleted archive %s after recall", key)
        except ArchiveStoreError as exc:
            logger.warning("Could not delete archive %s: %s", key, exc)

    async def drain(self) -> None:
        await self.queue.join()
        while self._discards:
            await asyncio.gather(*list(self._discards), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.queue.shutdown()
