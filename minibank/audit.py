"""
Audit Log Module

Append-only, hash-chained log of every committed transaction. Entries are
written exactly once, inside the same unit of work as the balance changes
they record, and are never updated or deleted.

The chain head (last sequence number and hash) lives in its own record and
is read with a lock inside the unit of work, so concurrent appends
serialize and a rolled-back append leaves the head untouched.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any

from .errors import DuplicateTransaction
from .storage import StorageInterface
from .transactions import Transaction
from .logging_config import get_logger


HEAD_RECORD_ID = "head"


def calculate_entry_hash(transaction: Transaction) -> str:
    """
    Calculate the SHA-256 hash of an audit entry

    Covers every field except ``current_hash`` and ``updated_at``.
    """
    hash_data = {
        'id': transaction.id,
        'created_at': transaction.created_at.isoformat(),
        'kind': transaction.kind.value,
        'holder_account_id': transaction.holder_account_id,
        'receiver_account_id': transaction.receiver_account_id,
        'amount': transaction.amount,
        'status': transaction.status.value,
        'transaction_date': transaction.transaction_date.isoformat(),
        'sequence': transaction.sequence,
        'previous_hash': transaction.previous_hash,
    }

    json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(json_data.encode('utf-8')).hexdigest()


class AuditLog(ABC):
    """Capabilities the ledger engine needs from an audit log"""

    @abstractmethod
    def append(self, transaction: Transaction) -> Transaction:
        """Insert one immutable entry inside the caller's unit of work"""

    @abstractmethod
    def list_all(self) -> List[Transaction]:
        """All entries in insertion order"""


class StorageAuditLog(AuditLog):
    """Hash-chained audit log backed by a StorageInterface table"""

    def __init__(self, storage: StorageInterface, table_name: str = "transactions",
                 head_table: str = "transactions_head"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = head_table
        self.logger = get_logger("minibank.audit")

    def append(self, transaction: Transaction) -> Transaction:
        """
        Append a transaction to the log

        Assigns the next sequence number and chains the entry to the current
        head. Joins the caller's unit of work when there is one.

        Raises:
            DuplicateTransaction: If an entry with this id already exists
        """
        with self.storage.atomic():
            if self.storage.exists(self.table_name, transaction.id):
                raise DuplicateTransaction(transaction.id)

            # A row lock needs a row: seed the head before locking it
            self.storage.insert_if_absent(
                self.head_table, HEAD_RECORD_ID, {'sequence': 0, 'hash': ""}
            )
            head = self.storage.load_for_update(self.head_table, HEAD_RECORD_ID)

            transaction.sequence = head['sequence'] + 1
            transaction.previous_hash = head['hash']
            transaction.current_hash = calculate_entry_hash(transaction)

            self.storage.save(self.table_name, transaction.id, transaction.to_dict())
            self.storage.save(self.head_table, HEAD_RECORD_ID, {
                'sequence': transaction.sequence,
                'hash': transaction.current_hash,
            })

        self.logger.debug(f"Audit entry {transaction.sequence} appended: {transaction.id}")
        return transaction

    def list_all(self) -> List[Transaction]:
        entries = [Transaction.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda t: t.sequence)
        return entries

    def list_for_account(self, account_id: str) -> List[Transaction]:
        """Entries where the account is holder or receiver"""
        return [
            t for t in self.list_all()
            if account_id in (t.holder_account_id, t.receiver_account_id)
        ]

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
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
            'sequence_gaps': [],
        }

        entries = self.list_all()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            expected_hash = calculate_entry_hash(entry)
            if entry.current_hash != expected_hash:
                result['valid'] = False
                result['hash_errors'].append({
                    'transaction_id': entry.id,
                    'position': position,
                    'expected_hash': expected_hash,
                    'actual_hash': entry.current_hash
                })

            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'transaction_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })

            if entry.sequence != position + 1:
                result['valid'] = False
                result['sequence_gaps'].append({
                    'transaction_id': entry.id,
                    'expected_sequence': position + 1,
                    'actual_sequence': entry.sequence
                })

            previous_hash = entry.current_hash

        head = self.storage.load(self.head_table, HEAD_RECORD_ID)
        if entries and (head is None or head['hash'] != entries[-1].current_hash):
            result['valid'] = False
            result['head_mismatch'] = True

        return result
