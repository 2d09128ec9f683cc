"""
PayGuard - Staff Registry Adapter

Lookup of registered identities and their verification state.

The detector engine reads the registry through immutable StaffSnapshot
values so that concurrent passes never share a live ORM object.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payguard.models.staff import StaffIdentity, FieldChannel
from payguard.utils.error_handling import RegistryLookupException

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaffSnapshot:
    """Read-only view of a registry entry used during detection."""
    identity_hash: str
    bvn_hash: str
    nin_hash: str
    phone_hash: Optional[str]
    name_encrypted: str
    grade: Optional[str]
    department: Optional[str]
    verified: bool
    is_active: bool
    ledger_tx_count: int

    @classmethod
    def from_model(cls, staff: StaffIdentity) -> "StaffSnapshot":
        return cls(
            identity_hash=staff.identity_hash,
            bvn_hash=staff.bvn_hash,
            nin_hash=staff.nin_hash,
            phone_hash=staff.phone_hash,
            name_encrypted=staff.name_encrypted,
            grade=staff.grade,
            department=staff.department,
            verified=bool(staff.verified),
            is_active=bool(staff.is_active),
            ledger_tx_count=len(staff.ledger_tx_hashes or []),
        )

    def field_hash(self, channel: FieldChannel) -> Optional[str]:
        if channel == FieldChannel.BVN:
            return self.bvn_hash
        if channel == FieldChannel.NIN:
            return self.nin_hash
        return self.phone_hash


# =============================================================================
# ABSTRACT REGISTRY
# =============================================================================

class StaffRegistry(ABC):
    """Abstract staff registry."""

    @abstractmethod
    async def find_by_identity_hash(self, identity_hash: str) -> Optional[StaffIdentity]:
        """Single lookup by identity hash."""
        pass

    @abstractmethod
    async def find_many_by_identity_hash(self, identity_hashes: Iterable[str]) -> List[StaffIdentity]:
        """Multi-key lookup; unknown hashes are simply absent from the result."""
        pass

    @abstractmethod
    async def find_by_field_hash(self, channel: FieldChannel, field_hash: str) -> List[StaffIdentity]:
        """All identities sharing a per-field hash."""
        pass

    async def snapshot_many(self, identity_hashes: Iterable[str]) -> Dict[str, StaffSnapshot]:
        """Bulk fetch as immutable snapshots keyed by identity hash."""
        entries = await self.find_many_by_identity_hash(identity_hashes)
        return {e.identity_hash: StaffSnapshot.from_model(e) for e in entries}


# =============================================================================
# SQLALCHEMY REGISTRY
# =============================================================================

class SQLStaffRegistry(StaffRegistry):
    """Registry backed by the staff_identities table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_identity_hash(self, identity_hash: str) -> Optional[StaffIdentity]:
        try:
            result = await self.db.execute(
                select(StaffIdentity).where(StaffIdentity.identity_hash == identity_hash)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RegistryLookupException(
                f"Registry lookup failed for {identity_hash[:12]}...", original_error=e
            )

    async def find_many_by_identity_hash(self, identity_hashes: Iterable[str]) -> List[StaffIdentity]:
        hashes = list(dict.fromkeys(identity_hashes))
        if not hashes:
            return []
        try:
            result = await self.db.execute(
                select(StaffIdentity).where(StaffIdentity.identity_hash.in_(hashes))
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RegistryLookupException(
                f"Bulk registry lookup failed for {len(hashes)} identities", original_error=e
            )

    async def find_by_field_hash(self, channel: FieldChannel, field_hash: str) -> List[StaffIdentity]:
        column = {
            FieldChannel.BVN: StaffIdentity.bvn_hash,
            FieldChannel.NIN: StaffIdentity.nin_hash,
            FieldChannel.PHONE: StaffIdentity.phone_hash,
        }[channel]
        try:
            result = await self.db.execute(select(StaffIdentity).where(column == field_hash))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RegistryLookupException(
                f"Registry lookup by {channel.value} hash failed", original_error=e
            )

    # ===========================================
    # WRITE PATHS
    # ===========================================

    async def add(self, staff: StaffIdentity) -> StaffIdentity:
        """Stage a new identity; the caller commits."""
        self.db.add(staff)
        await self.db.flush()
        return staff

    async def mark_verified(self, identity_hash: str, tx_hash: str) -> Optional[StaffIdentity]:
        """Record a successful ledger registration."""
        staff = await self.find_by_identity_hash(identity_hash)
        if staff is None:
            return None
        tx_hashes = list(staff.ledger_tx_hashes or [])
        if tx_hash not in tx_hashes:
            tx_hashes.append(tx_hash)
        staff.ledger_tx_hashes = tx_hashes
        staff.verified = True
        await self.db.flush()
        logger.info(f"Staff {identity_hash[:12]}... verified on ledger (tx={tx_hash[:12]}...)")
        return staff

    async def deactivate(self, identity_hash: str) -> bool:
        """Deactivate instead of deleting. Returns False if unknown."""
        result = await self.db.execute(
            update(StaffIdentity)
            .where(StaffIdentity.identity_hash == identity_hash)
            .values(is_active=False)
        )
        return result.rowcount > 0

    async def list_unverified(self, limit: int = 100) -> Sequence[StaffIdentity]:
        """Active identities still waiting for a chain proof, oldest first."""
        result = await self.db.execute(
            select(StaffIdentity)
            .where(
                StaffIdentity.verified == False,  # noqa: E712
                StaffIdentity.is_active == True,  # noqa: E712
            )
            .order_by(StaffIdentity.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())
