"""
PayGuard - Payroll Anomaly Detection Engine

Four independent passes over a batch's records:
1. Ghost workers: identity missing from the registry, or present but unverified
2. Exact duplicates: registry entries sharing a BVN or NIN hash
3. Fuzzy duplicates: near-identical staff names (rapidfuzz edit-distance ratio)
4. Salary anomalies: amount outside the configured range for the staff grade

Passes run concurrently, each into its own result list, and are merged once
all have finished. A failure evaluating one record, pair or pass is recorded
as skipped and never aborts the run.

Scaling limit: the fuzzy pass compares every pair of referenced identities
(O(n^2)). Batches are capped at settings.max_batch_records; going much beyond
low thousands would need blocking by a phonetic key.
"""

import asyncio
import logging
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from rapidfuzz import fuzz

from payguard.config import settings
from payguard.models.flag import Flag, FlagType, FlagResolution
from payguard.models.staff import FieldChannel
from payguard.salary_grades import SALARY_RANGES, SalaryRange, get_salary_range
from payguard.services import flag_explanations
from payguard.services.identity_hasher import normalize
from payguard.services.staff_registry import StaffRegistry, StaffSnapshot
from payguard.utils.pii_security import PIICategory, PIIEncryptionEngine, get_pii_engine

logger = logging.getLogger(__name__)


# Exact-duplicate channels, checked in this order
DUPLICATE_CHANNELS = (FieldChannel.BVN, FieldChannel.NIN)

GHOST_SCORE = 1.0
MISSING_REGISTRY_SCORE = 0.9
EXACT_DUPLICATE_SCORE = 1.0

# Merge order: earlier passes win ties and order the output
PASS_ORDER = ("ghost", "exact_duplicate", "fuzzy_duplicate", "salary")


# ===========================================
# VALUE TYPES
# ===========================================

@dataclass(frozen=True)
class CandidateRecord:
    """A parsed payroll row awaiting screening."""
    position: int
    identity_hash: str
    amount: Decimal


@dataclass(frozen=True)
class SkippedEvaluation:
    """An evaluation that could not be performed."""
    pass_name: str
    identity_hash: Optional[str]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"pass": self.pass_name, "identity_hash": self.identity_hash, "reason": self.reason}


@dataclass
class Finding:
    """Un-persisted detector output."""
    identity_hash: str
    flag_type: FlagType
    score: float
    context: Dict[str, Any]
    reason: str = ""

    def __post_init__(self):
        if not self.reason:
            self.reason = flag_explanations.build_reason(self.flag_type, self.context)


@dataclass
class PassResult:
    findings: List[Finding] = field(default_factory=list)
    skipped: List[SkippedEvaluation] = field(default_factory=list)


@dataclass
class DetectionResult:
    """Merged output of all passes for one batch."""
    flags: List[Flag]
    summary: Dict[str, Any]
    skipped: List[SkippedEvaluation]

    def flags_by_identity(self) -> Dict[str, List[Flag]]:
        grouped: Dict[str, List[Flag]] = {}
        for flag in self.flags:
            grouped.setdefault(flag.identity_hash, []).append(flag)
        return grouped


# ===========================================
# SIMILARITY
# ===========================================

def name_similarity(first: str, second: str) -> float:
    """
    Normalized Levenshtein (indel) similarity of two names, in [0, 1].

    Whitespace is ignored, so "jane doe" and "janedoe" compare as identical.
    Symmetric: name_similarity(a, b) == name_similarity(b, a).
    """
    a = "".join(first.split())
    b = "".join(second.split())
    if a == b:
        return 1.0
    return fuzz.ratio(a, b) / 100.0


def _amount_str(amount: Decimal) -> str:
    return str(amount.quantize(Decimal("0.01")))


# ===========================================
# ENGINE
# ===========================================

class DetectionEngine:
    """
    Runs the four detection passes over a batch and builds Flag rows.

    The engine never commits; the caller persists result.flags inside
    its own transaction.
    """

    def __init__(
        self,
        registry: StaffRegistry,
        pii_engine: Optional[PIIEncryptionEngine] = None,
        salary_ranges: Optional[Mapping[str, SalaryRange]] = None,
        enricher: Optional[Any] = None,
        fuzzy_threshold: Optional[float] = None,
        max_fuzzy_entries: Optional[int] = None,
        max_enrichment_concurrency: Optional[int] = None,
    ):
        self.registry = registry
        self.pii_engine = pii_engine or get_pii_engine()
        self.salary_ranges = salary_ranges if salary_ranges is not None else SALARY_RANGES
        self.enricher = enricher
        self.fuzzy_threshold = (
            fuzzy_threshold if fuzzy_threshold is not None else settings.fuzzy_match_threshold
        )
        self.max_fuzzy_entries = max_fuzzy_entries or settings.max_batch_records
        self.max_enrichment_concurrency = max_enrichment_concurrency or settings.enrichment_max_concurrency

    async def run(self, batch_id: uuid.UUID, records: Sequence[CandidateRecord]) -> DetectionResult:
        """Screen a batch and return merged, explained flags."""
        logger.info(f"Running detection on {len(records)} records for batch {batch_id}")

        snapshots, unavailable, skipped = await self._load_snapshots(records)
        evaluable = [r for r in records if r.identity_hash not in unavailable]

        # Referenced registry entries in first-appearance order
        referenced: "OrderedDict[str, StaffSnapshot]" = OrderedDict()
        for record in evaluable:
            snapshot = snapshots.get(record.identity_hash)
            if snapshot is not None and snapshot.identity_hash not in referenced:
                referenced[snapshot.identity_hash] = snapshot
        entries = list(referenced.values())

        pass_results = await asyncio.gather(
            self._ghost_pass(evaluable, snapshots),
            self._exact_duplicate_pass(entries),
            asyncio.to_thread(self._fuzzy_duplicate_pass, entries),
            self._salary_pass(evaluable, snapshots),
            return_exceptions=True,
        )

        per_pass: Dict[str, PassResult] = {}
        for name, outcome in zip(PASS_ORDER, pass_results):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(f"Detection pass '{name}' failed: {outcome}", exc_info=outcome)
                skipped.append(SkippedEvaluation(name, None, f"pass failed: {type(outcome).__name__}"))
                per_pass[name] = PassResult()
            else:
                per_pass[name] = outcome
                skipped.extend(outcome.skipped)

        findings = self._merge(per_pass, evaluable)
        flags = await self._build_flags(batch_id, findings)
        summary = self._summarize(records, flags, skipped)

        logger.info(
            f"Detection complete for batch {batch_id}: {len(flags)} flags "
            f"(ghost={summary['ghost']}, missing_registry={summary['missing_registry']}, "
            f"duplicate={summary['duplicate']}, salary_anomaly={summary['salary_anomaly']}), "
            f"{len(skipped)} skipped"
        )
        for skip in skipped:
            logger.warning(f"Skipped {skip.pass_name} evaluation for {skip.identity_hash or '-'}: {skip.reason}")

        return DetectionResult(flags=flags, summary=summary, skipped=skipped)

    # ===========================================
    # REGISTRY SNAPSHOT
    # ===========================================

    async def _load_snapshots(
        self, records: Sequence[CandidateRecord]
    ) -> Tuple[Dict[str, StaffSnapshot], Set[str], List[SkippedEvaluation]]:
        """
        One multi-key fetch; on failure, fall back to per-record lookups.
        Identities whose lookup fails are returned in the unavailable set.
        """
        hashes = list(dict.fromkeys(r.identity_hash for r in records))
        skipped: List[SkippedEvaluation] = []
        unavailable: Set[str] = set()

        try:
            return await self.registry.snapshot_many(hashes), unavailable, skipped
        except Exception as e:
            logger.warning(f"Bulk registry fetch failed, falling back to single lookups: {e}")

        snapshots: Dict[str, StaffSnapshot] = {}
        for identity_hash in hashes:
            try:
                staff = await self.registry.find_by_identity_hash(identity_hash)
            except Exception as e:
                unavailable.add(identity_hash)
                skipped.append(SkippedEvaluation("registry", identity_hash, f"lookup failed: {e}"))
                continue
            if staff is not None:
                snapshots[identity_hash] = StaffSnapshot.from_model(staff)
        return snapshots, unavailable, skipped

    # ===========================================
    # PASS 1: GHOST WORKERS
    # ===========================================

    async def _ghost_pass(
        self,
        records: Sequence[CandidateRecord],
        snapshots: Mapping[str, StaffSnapshot],
    ) -> PassResult:
        result = PassResult()
        seen: Set[str] = set()
        for record in records:
            if record.identity_hash in seen:
                continue
            seen.add(record.identity_hash)

            staff = snapshots.get(record.identity_hash)
            if staff is None:
                result.findings.append(Finding(
                    identity_hash=record.identity_hash,
                    flag_type=FlagType.GHOST,
                    score=GHOST_SCORE,
                    context={
                        "identity_hash": record.identity_hash,
                        "amount": _amount_str(record.amount),
                    },
                ))
            elif not staff.verified:
                result.findings.append(Finding(
                    identity_hash=record.identity_hash,
                    flag_type=FlagType.MISSING_REGISTRY,
                    score=MISSING_REGISTRY_SCORE,
                    context={
                        "identity_hash": record.identity_hash,
                        "amount": _amount_str(record.amount),
                        "grade": staff.grade,
                        "department": staff.department,
                        "ledger_tx_count": staff.ledger_tx_count,
                    },
                ))
        return result

    # ===========================================
    # PASS 2: EXACT DUPLICATES
    # ===========================================

    async def _exact_duplicate_pass(self, entries: Sequence[StaffSnapshot]) -> PassResult:
        result = PassResult()
        flagged: Set[str] = set()

        for channel in DUPLICATE_CHANNELS:
            groups: "OrderedDict[str, List[StaffSnapshot]]" = OrderedDict()
            for entry in entries:
                field_hash = entry.field_hash(channel)
                if field_hash:
                    groups.setdefault(field_hash, []).append(entry)

            for members in groups.values():
                if len(members) < 2:
                    continue
                member_hashes = [m.identity_hash for m in members]
                for member in members:
                    if member.identity_hash in flagged:
                        continue
                    flagged.add(member.identity_hash)
                    siblings = [h for h in member_hashes if h != member.identity_hash]
                    result.findings.append(Finding(
                        identity_hash=member.identity_hash,
                        flag_type=FlagType.DUPLICATE,
                        score=EXACT_DUPLICATE_SCORE,
                        context={
                            "identity_hash": member.identity_hash,
                            "duplicate_field": channel.value,
                            "duplicate_count": len(members),
                            "sibling_hashes": siblings,
                            "grade": member.grade,
                            "department": member.department,
                        },
                    ))
        return result

    # ===========================================
    # PASS 3: FUZZY DUPLICATES
    # ===========================================

    def _fuzzy_duplicate_pass(self, entries: Sequence[StaffSnapshot]) -> PassResult:
        result = PassResult()

        if len(entries) > self.max_fuzzy_entries:
            result.skipped.append(SkippedEvaluation(
                "fuzzy_duplicate", None,
                f"{len(entries)} identities exceeds limit of {self.max_fuzzy_entries}",
            ))
            return result

        names: List[Tuple[StaffSnapshot, str]] = []
        for entry in entries:
            try:
                plaintext = self.pii_engine.decrypt_field(entry.name_encrypted, PIICategory.FULL_NAME)
            except ValueError as e:
                result.skipped.append(SkippedEvaluation("fuzzy_duplicate", entry.identity_hash, str(e)))
                continue
            name = normalize(plaintext)
            if name:
                names.append((entry, name))

        # Best counterpart per first member
        best: "OrderedDict[str, Tuple[float, StaffSnapshot, str, StaffSnapshot, str]]" = OrderedDict()
        for i in range(len(names)):
            first, first_name = names[i]
            for j in range(i + 1, len(names)):
                second, second_name = names[j]
                similarity = name_similarity(first_name, second_name)
                if not (self.fuzzy_threshold < similarity < 1.0):
                    continue
                current = best.get(first.identity_hash)
                if current is None or similarity > current[0]:
                    best[first.identity_hash] = (similarity, first, first_name, second, second_name)

        for similarity, first, first_name, second, second_name in best.values():
            result.findings.append(Finding(
                identity_hash=first.identity_hash,
                flag_type=FlagType.DUPLICATE,
                score=similarity,
                context={
                    "identity_hash": first.identity_hash,
                    "duplicate_field": flag_explanations.FUZZY_FIELD,
                    "similarity": similarity,
                    "matched_identity_hash": second.identity_hash,
                    "name": first_name,
                    "matched_name": second_name,
                    "grade": first.grade,
                    "department": first.department,
                },
            ))
        return result

    # ===========================================
    # PASS 4: SALARY ANOMALIES
    # ===========================================

    async def _salary_pass(
        self,
        records: Sequence[CandidateRecord],
        snapshots: Mapping[str, StaffSnapshot],
    ) -> PassResult:
        result = PassResult()
        worst: "OrderedDict[str, Finding]" = OrderedDict()
        unconfigured: Set[str] = set()

        for record in records:
            staff = snapshots.get(record.identity_hash)
            if staff is None or not staff.grade:
                continue

            band = get_salary_range(staff.grade, self.salary_ranges)
            if band is None:
                if record.identity_hash not in unconfigured:
                    unconfigured.add(record.identity_hash)
                    result.skipped.append(SkippedEvaluation(
                        "salary", record.identity_hash, f"no salary range for grade '{staff.grade}'",
                    ))
                continue

            try:
                finding = self._evaluate_salary(record, staff, band)
            except (ArithmeticError, ValueError) as e:
                result.skipped.append(SkippedEvaluation("salary", record.identity_hash, str(e)))
                continue

            if finding is not None:
                current = worst.get(record.identity_hash)
                if current is None or finding.score > current.score:
                    worst[record.identity_hash] = finding

        result.findings.extend(worst.values())
        return result

    @staticmethod
    def _evaluate_salary(
        record: CandidateRecord,
        staff: StaffSnapshot,
        band: SalaryRange,
    ) -> Optional[Finding]:
        amount = record.amount
        if band.contains(amount):
            return None

        if amount < band.minimum:
            deviation = (band.minimum - amount) / band.minimum
        else:
            deviation = (amount - band.maximum) / band.maximum
        score = float(min(deviation, Decimal("1")))

        return Finding(
            identity_hash=record.identity_hash,
            flag_type=FlagType.SALARY_ANOMALY,
            score=score,
            context={
                "identity_hash": record.identity_hash,
                "amount": _amount_str(amount),
                "grade": staff.grade,
                "department": staff.department,
                "expected_min": _amount_str(band.minimum),
                "expected_max": _amount_str(band.maximum),
                "deviation_percent": float(deviation * 100),
            },
        )

    # ===========================================
    # MERGE, EXPLAIN, BUILD
    # ===========================================

    @staticmethod
    def _merge(per_pass: Mapping[str, PassResult], records: Sequence[CandidateRecord]) -> List[Finding]:
        """
        Dedupe per (identity, flag type); earlier passes win, so an exact
        duplicate flag suppresses a fuzzy one for the same identity.
        Output is ordered by first record position, then pass order.
        """
        merged: "OrderedDict[Tuple[str, FlagType], Tuple[int, Finding]]" = OrderedDict()
        for pass_index, name in enumerate(PASS_ORDER):
            for finding in per_pass[name].findings:
                key = (finding.identity_hash, finding.flag_type)
                if key not in merged:
                    merged[key] = (pass_index, finding)

        first_position: Dict[str, int] = {}
        for record in records:
            first_position.setdefault(record.identity_hash, record.position)

        ordered = sorted(
            merged.values(),
            key=lambda item: (first_position.get(item[1].identity_hash, 0), item[0]),
        )
        return [finding for _, finding in ordered]

    async def _explain(self, findings: Sequence[Finding]) -> List[str]:
        if self.enricher is None or not findings:
            return [f.reason for f in findings]

        # Bounded so a large batch does not open one provider request per flag at once
        semaphore = asyncio.Semaphore(self.max_enrichment_concurrency)

        async def enrich_one(finding: Finding) -> str:
            async with semaphore:
                return await self.enricher.enrich(finding.flag_type, finding.context, finding.reason)

        outcomes = await asyncio.gather(
            *(enrich_one(f) for f in findings),
            return_exceptions=True,
        )
        explanations = []
        for finding, outcome in zip(findings, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException) or not outcome:
                explanations.append(finding.reason)
            else:
                explanations.append(outcome)
        return explanations

    async def _build_flags(self, batch_id: uuid.UUID, findings: Sequence[Finding]) -> List[Flag]:
        explanations = await self._explain(findings)
        return [
            Flag(
                id=uuid.uuid4(),
                batch_id=batch_id,
                identity_hash=finding.identity_hash,
                flag_type=finding.flag_type,
                score=max(0.0, min(finding.score, 1.0)),
                reason=finding.reason,
                explanation=explanation,
                details=finding.context,
                reviewed=False,
                resolution=FlagResolution.PENDING,
            )
            for finding, explanation in zip(findings, explanations)
        ]

    @staticmethod
    def _summarize(
        records: Sequence[CandidateRecord],
        flags: Iterable[Flag],
        skipped: Sequence[SkippedEvaluation],
    ) -> Dict[str, Any]:
        flags = list(flags)
        counts = Counter(f.flag_type.value for f in flags)
        return {
            "total_records": len(records),
            "total_flags": len(flags),
            "flagged_identities": len({f.identity_hash for f in flags}),
            FlagType.GHOST.value: counts.get(FlagType.GHOST.value, 0),
            FlagType.MISSING_REGISTRY.value: counts.get(FlagType.MISSING_REGISTRY.value, 0),
            FlagType.DUPLICATE.value: counts.get(FlagType.DUPLICATE.value, 0),
            FlagType.SALARY_ANOMALY.value: counts.get(FlagType.SALARY_ANOMALY.value, 0),
            "skipped": [s.to_dict() for s in skipped],
        }
