"""
PayGuard - Payroll Batch Service Tests

End-to-end ingestion tests: CSV parsing, duplicate rejection, detection,
flag attachment and ledger recording against the in-memory contract.
"""

import asyncio
from decimal import Decimal
from typing import Iterable, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import InvalidRequestError

from payguard.models.flag import Flag, FlagResolution, FlagType
from payguard.models.payroll import BatchStatus, PayrollBatch, PayrollRecord, RecordStatus
from payguard.services.identity_hasher import hash_field
from payguard.services.ledger_client import encode_hash32
from payguard.services.payroll_batch_service import PayrollBatchService, parse_payroll_csv
from payguard.services.soroban_gateway import RpcSendStatus
from payguard.utils.error_handling import (
    BatchNotFoundException,
    DuplicateBatchException,
    ValidationException,
)


def build_csv(rows: Iterable[Tuple[str, object]], header: str = "identity_hash,amount") -> str:
    lines = [header] + [f"{h},{amount}" for h, amount in rows]
    return "\n".join(lines) + "\n"


async def count_rows(db_session, model) -> int:
    result = await db_session.execute(select(func.count()).select_from(model))
    return result.scalar()


# ===========================================
# CSV PARSING
# ===========================================

class TestParsePayrollCSV:
    """Test row parsing and validation."""

    def test_valid_rows(self):
        a, b = hash_field("a"), hash_field("b")

        records, rows_read = parse_payroll_csv(build_csv([(a, "180000"), (b, "200000.50")]))

        assert rows_read == 2
        assert [r.identity_hash for r in records] == [a, b]
        assert records[1].amount == Decimal("200000.50")

    def test_header_aliases_and_case(self):
        a = hash_field("a")

        records, _ = parse_payroll_csv(build_csv([(a.upper(), "180000")], header=" StaffHash , Salary "))

        assert records[0].identity_hash == a

    def test_invalid_rows_dropped(self):
        a = hash_field("a")
        content = build_csv([
            (a, "180000"),
            ("", "180000"),
            ("not-a-hash", "180000"),
            (a, "-5"),
            (a, "0"),
            (a, "abc"),
            (a, "100000001"),
        ])

        records, rows_read = parse_payroll_csv(content)

        assert rows_read == 7
        assert len(records) == 1
        assert records[0].position == 0

    def test_bytes_with_bom(self):
        a = hash_field("a")
        content = "\ufeff" + build_csv([(a, "1000")])

        records, _ = parse_payroll_csv(content.encode("utf-8"))

        assert len(records) == 1

    def test_empty_file(self):
        with pytest.raises(ValidationException):
            parse_payroll_csv("")

    def test_missing_columns(self):
        with pytest.raises(ValidationException) as exc_info:
            parse_payroll_csv("name,amount\nx,100\n")
        assert "found" in exc_info.value.details


# ===========================================
# INGESTION
# ===========================================

class TestIngestCSV:
    """Test the full ingestion pipeline."""

    @pytest.mark.asyncio
    async def test_end_to_end_ghost_duplicate_salary(self, db_session, make_staff, ledger, fake_gateway):
        """One ghost, two duplicates sharing a BVN, one of them underpaid."""
        ghost = hash_field("ghost-e2e")
        first = await make_staff(bvn="22444444444", grade="Grade Level 8")
        second = await make_staff(bvn="22444444444", grade="Grade Level 8")
        content = build_csv([
            (ghost, "180000"),
            (first.identity_hash, "180000"),
            (second.identity_hash, "100000"),
        ])
        service = PayrollBatchService(db_session, ledger=ledger)

        result = await service.ingest_csv(content, period_month=9, period_year=2026)

        counts = {t: sum(1 for f in result.flags if f.flag_type == t) for t in FlagType}
        assert counts[FlagType.GHOST] == 1
        assert counts[FlagType.DUPLICATE] == 2
        assert counts[FlagType.SALARY_ANOMALY] == 1
        assert counts[FlagType.MISSING_REGISTRY] == 0

        batch = result.batch
        assert batch.record_count == 3
        assert batch.flagged_count == 3
        assert batch.total_amount == Decimal("460000")
        assert batch.status == BatchStatus.VERIFIED
        assert batch.ledger_tx_hash
        assert batch.summary_text.startswith("Payroll batch for 09/2026")
        assert batch.detection_summary["duplicate"] == 2
        assert fake_gateway.batches[encode_hash32(batch.batch_hash)] == 3

        stored = await service.get_batch(batch.id)
        assert all(r.status == RecordStatus.FLAGGED for r in stored.records)
        underpaid = next(r for r in stored.records if r.identity_hash == second.identity_hash)
        assert len(underpaid.flag_ids) == 2
        assert await count_rows(db_session, Flag) == 4

    @pytest.mark.asyncio
    async def test_clean_batch(self, db_session, make_staff, ledger):
        staff = [await make_staff() for _ in range(2)]
        content = build_csv([(s.identity_hash, "180000") for s in staff])

        result = await PayrollBatchService(db_session, ledger=ledger).ingest_csv(content, 1, 2026)

        assert result.flags == []
        assert result.batch.flagged_count == 0
        assert result.batch.status == BatchStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_duplicate_upload_rejected(self, db_session, make_staff, ledger):
        staff = await make_staff()
        content = build_csv([(staff.identity_hash, "180000")])
        service = PayrollBatchService(db_session, ledger=ledger)
        first = await service.ingest_csv(content, 3, 2026)

        with pytest.raises(DuplicateBatchException) as exc_info:
            await service.ingest_csv(content, 3, 2026)

        assert exc_info.value.existing_batch_id == first.batch.id
        assert await count_rows(db_session, PayrollBatch) == 1

    @pytest.mark.asyncio
    async def test_rows_dropped_reported(self, db_session, make_staff, ledger):
        staff = await make_staff()
        content = build_csv([(staff.identity_hash, "180000"), ("bad", "1"), (staff.identity_hash, "x")])

        result = await PayrollBatchService(db_session, ledger=ledger).ingest_csv(content, 4, 2026)

        assert result.rows_received == 3
        assert result.rows_dropped == 2
        assert result.batch.record_count == 1

    @pytest.mark.asyncio
    async def test_no_valid_rows(self, db_session, ledger):
        content = build_csv([("bad", "1"), ("worse", "-1")])

        with pytest.raises(ValidationException):
            await PayrollBatchService(db_session, ledger=ledger).ingest_csv(content, 4, 2026)

        assert await count_rows(db_session, PayrollBatch) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("month,year", [(0, 2026), (13, 2026), (6, 2019), (6, 2999)])
    async def test_invalid_period(self, db_session, ledger, month, year):
        content = build_csv([(hash_field("a"), "1000")])

        with pytest.raises(ValidationException):
            await PayrollBatchService(db_session, ledger=ledger).ingest_csv(content, month, year)

    @pytest.mark.asyncio
    async def test_batch_record_limit(self, db_session, ledger, monkeypatch):
        from payguard.config import settings

        monkeypatch.setattr(settings, "max_batch_records", 2)
        content = build_csv([(hash_field(str(i)), "1000") for i in range(3)])

        with pytest.raises(ValidationException):
            await PayrollBatchService(db_session, ledger=ledger).ingest_csv(content, 5, 2026)

    @pytest.mark.asyncio
    async def test_enriched_explanations_and_summary(self, db_session, ledger, fake_enricher):
        content = build_csv([(hash_field("ghost-enriched"), "1000")])
        service = PayrollBatchService(db_session, ledger=ledger, enricher=fake_enricher)

        result = await service.ingest_csv(content, 6, 2026)

        assert result.flags[0].explanation.startswith("[enriched] ")
        assert result.batch.summary_text.startswith("[summary] ")

    @pytest.mark.asyncio
    async def test_detection_failure_discards_batch(self, db_session, make_staff, ledger):
        staff = await make_staff()
        content = build_csv([(staff.identity_hash, "180000")])
        engine = MagicMock()
        engine.run = AsyncMock(side_effect=RuntimeError("detector crashed"))
        service = PayrollBatchService(db_session, ledger=ledger, engine=engine)

        with pytest.raises(RuntimeError):
            await service.ingest_csv(content, 7, 2026)

        assert await count_rows(db_session, Flag) == 0
        assert await count_rows(db_session, PayrollBatch) == 0
        assert await count_rows(db_session, PayrollRecord) == 0

        result = await PayrollBatchService(db_session, ledger=ledger).ingest_csv(content, 7, 2026)
        assert result.batch.status == BatchStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_cancelled_detection_discards_batch(self, db_session, ledger):
        started = asyncio.Event()

        async def hang(batch_id, candidates):
            started.set()
            await asyncio.Event().wait()

        engine = MagicMock()
        engine.run = hang
        content = build_csv([(hash_field("ghost-cancelled"), "1000")])
        task = asyncio.create_task(
            PayrollBatchService(db_session, ledger=ledger, engine=engine).ingest_csv(content, 8, 2026)
        )
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await count_rows(db_session, Flag) == 0
        assert await count_rows(db_session, PayrollBatch) == 0

    @pytest.mark.asyncio
    async def test_cancelled_flag_commit_leaves_no_partial_flags(self, db_session, ledger, monkeypatch):
        real_commit = db_session.commit
        commits = 0

        async def commit_cancelled_after_detection():
            nonlocal commits
            commits += 1
            # first commit persists the batch, the second attaches flags
            if commits == 2:
                raise asyncio.CancelledError()
            await real_commit()

        monkeypatch.setattr(db_session, "commit", commit_cancelled_after_detection)
        content = build_csv([(hash_field("ghost-partial"), "1000"), (hash_field("ghost-partial-2"), "2000")])

        with pytest.raises(asyncio.CancelledError):
            await PayrollBatchService(db_session, ledger=ledger).ingest_csv(content, 9, 2026)

        assert await count_rows(db_session, Flag) == 0
        assert await count_rows(db_session, PayrollRecord) == 0
        assert await count_rows(db_session, PayrollBatch) == 0


# ===========================================
# LEDGER OUTCOMES
# ===========================================

class TestLedgerRecording:
    """Test batch status under ledger success and failure."""

    @pytest.mark.asyncio
    async def test_ledger_failure_marks_failed_but_queryable(self, db_session, ledger, fake_gateway):
        fake_gateway.send_status = RpcSendStatus.ERROR
        content = build_csv([(hash_field("ghost-failed"), "1000")])
        service = PayrollBatchService(db_session, ledger=ledger)

        result = await service.ingest_csv(content, 8, 2026)

        assert result.batch.status == BatchStatus.FAILED
        assert "rejected" in result.batch.ledger_error
        assert result.batch.ledger_tx_hash is None
        flags = await service.list_flags(result.batch.id)
        assert [f.flag_type for f in flags] == [FlagType.GHOST]

    @pytest.mark.asyncio
    async def test_no_ledger_configured(self, db_session):
        content = build_csv([(hash_field("ghost-offline"), "1000")])

        result = await PayrollBatchService(db_session).ingest_csv(content, 8, 2026)

        assert result.batch.status == BatchStatus.FAILED
        assert result.batch.ledger_error == "Ledger not configured"

    @pytest.mark.asyncio
    async def test_retry_failed_batch(self, db_session, ledger, fake_gateway):
        fake_gateway.send_status = RpcSendStatus.ERROR
        service = PayrollBatchService(db_session, ledger=ledger)
        result = await service.ingest_csv(build_csv([(hash_field("ghost-retry"), "1000")]), 9, 2026)
        assert [b.id for b in await service.list_failed_batches()] == [result.batch.id]

        fake_gateway.send_status = RpcSendStatus.PENDING
        batch = await service.retry_ledger_recording(result.batch.id)

        assert batch.status == BatchStatus.VERIFIED
        assert batch.ledger_tx_hash
        assert batch.ledger_error is None
        assert await service.list_failed_batches() == []

    @pytest.mark.asyncio
    async def test_retry_when_already_on_chain(self, db_session, ledger, fake_gateway):
        service = PayrollBatchService(db_session)
        result = await service.ingest_csv(build_csv([(hash_field("ghost-onchain"), "1000")]), 10, 2026)
        fake_gateway.batches[encode_hash32(result.batch.batch_hash)] = 1

        batch = await PayrollBatchService(db_session, ledger=ledger).retry_ledger_recording(result.batch.id)

        assert batch.status == BatchStatus.VERIFIED
        assert fake_gateway.sent == []

    @pytest.mark.asyncio
    async def test_verify_batch_on_chain(self, db_session, ledger):
        service = PayrollBatchService(db_session, ledger=ledger)
        result = await service.ingest_csv(build_csv([(hash_field("ghost-verify"), "1000")]), 11, 2026)

        verification = await service.verify_batch_on_chain(result.batch.id)

        assert verification.recorded_on_chain is True
        assert verification.ledger_tx_hash == result.batch.ledger_tx_hash


# ===========================================
# QUERIES
# ===========================================

class TestBatchQueries:
    """Test batch and flag lookups."""

    @pytest.mark.asyncio
    async def test_get_batch_not_found(self, db_session):
        import uuid

        with pytest.raises(BatchNotFoundException):
            await PayrollBatchService(db_session).get_batch(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_get_batch_by_hash(self, db_session, ledger):
        service = PayrollBatchService(db_session, ledger=ledger)
        result = await service.ingest_csv(build_csv([(hash_field("ghost-hash"), "1000")]), 12, 2026)

        found = await service.get_batch_by_hash(result.batch.batch_hash)

        assert found.id == result.batch.id
        assert await service.get_batch_by_hash("0" * 64) is None

    @pytest.mark.asyncio
    async def test_list_flags_filtered(self, db_session, make_staff, ledger):
        staff = await make_staff(verified=False)
        content = build_csv([(hash_field("ghost-filter"), "1000"), (staff.identity_hash, "180000")])
        service = PayrollBatchService(db_session, ledger=ledger)
        result = await service.ingest_csv(content, 2, 2026)

        ghosts = await service.list_flags(result.batch.id, FlagType.GHOST)
        everything = await service.list_flags(result.batch.id)

        assert len(ghosts) == 1
        assert {f.flag_type for f in everything} == {FlagType.GHOST, FlagType.MISSING_REGISTRY}

    @pytest.mark.asyncio
    async def test_flag_stats(self, db_session, make_staff, ledger):
        staff = await make_staff(verified=False, grade="Grade Level 8")
        content = build_csv([
            (hash_field("ghost-stats"), "1000"),
            (hash_field("ghost-stats-2"), "1000"),
            (staff.identity_hash, "75000"),
        ])
        service = PayrollBatchService(db_session, ledger=ledger)
        result = await service.ingest_csv(content, 3, 2026)
        flags = await service.list_flags(result.batch.id, FlagType.GHOST)
        flags[0].resolution = FlagResolution.CONFIRMED
        await db_session.commit()

        stats = await service.flag_stats(result.batch.id)

        assert stats.total == 4
        assert stats.by_type == {"ghost": 2, "missing_registry": 1, "duplicate": 0, "salary_anomaly": 1}
        assert stats.by_resolution == {"pending": 3, "confirmed": 1, "false_positive": 0}

    @pytest.mark.asyncio
    async def test_flag_stats_unknown_batch(self, db_session):
        import uuid

        with pytest.raises(BatchNotFoundException):
            await PayrollBatchService(db_session).flag_stats(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_batch_flags_not_lazy_loaded(self, db_session, ledger):
        service = PayrollBatchService(db_session, ledger=ledger)
        result = await service.ingest_csv(build_csv([(hash_field("ghost-lazy"), "1000")]), 4, 2026)
        db_session.expunge_all()
        batch = await service.get_batch(result.batch.id)

        with pytest.raises(InvalidRequestError):
            batch.flags


class TestServiceProviders:
    """Test the FastAPI dependency providers."""

    def test_no_ledger_when_unconfigured(self, monkeypatch):
        from payguard.config import settings
        from payguard.dependencies import get_optional_ledger_client

        monkeypatch.setattr(settings, "soroban_contract_id", "")

        assert get_optional_ledger_client() is None

    @pytest.mark.asyncio
    async def test_batch_service_provider(self, db_session, ledger):
        from payguard.dependencies import get_payroll_batch_service

        service = await get_payroll_batch_service(db=db_session, ledger=ledger)

        assert service.ledger is ledger
        assert service.db is db_session
