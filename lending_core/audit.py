"""
Audit Trail Module

Append-only, hash-chained audit log keyed by transaction id. Entries are
written through the caller's transaction context so they commit (or vanish)
together with the mutation they describe. SHA-256 chaining makes any later
edit or deletion detectable.
"""

import hashlib
import json
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .models import AuditLogEntry, AuditOperation, to_json_safe
from .unit_of_work import TransactionContext, UnitOfWork, utcnow


def calculate_hash(entry: AuditLogEntry) -> str:
    """
    Calculate SHA-256 hash of an entry
    Hash includes all fields except current_hash to prevent circular reference
    """
    hash_data = {
        'id': entry.id,
        'sequence': entry.sequence,
        'created_at': entry.created_at.isoformat(),
        'transaction_id': entry.transaction_id,
        'operation': entry.operation,
        'user_id': entry.user_id,
        'previous_hash': entry.previous_hash,
        'metadata': entry.metadata,
    }
    json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(json_data.encode('utf-8')).hexdigest()


class AuditTrail:
    """
    Hash-chained audit trail recorder
    """

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def record(
        self,
        ctx: TransactionContext,
        transaction_id: str,
        operation: Union[AuditOperation, str],
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditLogEntry:
        """
        Append an audit entry inside the given transaction context

        Args:
            ctx: Transaction context the entry commits with
            transaction_id: Disbursement, payment or loan id the entry is about
            operation: Operation tag
            metadata: Structured details (Decimals, dates and enums are stringified)
            user_id: Identity that performed the operation

        Returns:
            Created AuditLogEntry
        """
        previous = await ctx.audit.latest()
        now = utcnow()

        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=transaction_id,
            operation=operation.value if isinstance(operation, Enum) else str(operation),
            user_id=user_id,
            metadata=to_json_safe(metadata or {}),
            sequence=(previous.sequence + 1) if previous else 1,
            previous_hash=previous.current_hash if previous else "",
        )
        entry.current_hash = calculate_hash(entry)

        await ctx.audit.insert(entry)
        return entry

    async def record_standalone(
        self,
        transaction_id: str,
        operation: Union[AuditOperation, str],
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditLogEntry:
        """Append an entry in its own transaction (read paths, after-the-fact notes)"""
        return await self.uow.with_transaction(
            lambda ctx: self.record(ctx, transaction_id, operation, metadata, user_id)
        )

    async def get_by_transaction(self, transaction_id: str) -> List[AuditLogEntry]:
        """All entries for a transaction id, oldest first"""
        return await self.uow.reader().audit.for_transaction(transaction_id)

    async def get_by_loan(self, loan_id: str) -> List[AuditLogEntry]:
        """All entries whose metadata references the loan, newest first"""
        return await self.uow.reader().audit.for_loan(loan_id)

    async def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = await self.uow.reader().audit.all()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            expected = calculate_hash(entry)
            if entry.current_hash != expected:
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': expected,
                    'actual_hash': entry.current_hash,
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash,
                })
            previous_hash = entry.current_hash

        return result
