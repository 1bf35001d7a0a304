"""
Test suite for storage backends

Tests basic CRUD, atomic rollback, compare-and-swap on versioned records
and typed record serialization for both the in-memory and SQLite backends.
"""

import os
import tempfile
import pytest
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from core_financing.errors import ConcurrentModificationError
from core_financing.periods import PaymentPeriod
from core_financing.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    due_date: date
    period: PaymentPeriod
    paid_at: Optional[datetime] = None
    version: int = 0


class TestStorageBackends:
    """Behaviour shared by every backend"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "financing_test.db")

    def teardown_method(self):
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        for suffix in ("-wal", "-shm"):
            if os.path.exists(self.db_path + suffix):
                os.remove(self.db_path + suffix)
        os.rmdir(self.temp_dir)

    def _backends(self):
        return [InMemoryStorage(), SQLiteStorage(self.db_path)]

    def test_basic_operations(self):
        for storage in self._backends():
            storage.save("loans", "L1", {"tenant_id": "T1", "amount": "10.00"})
            storage.save("loans", "L2", {"tenant_id": "T2", "amount": "20.00"})

            assert storage.load("loans", "L1")["amount"] == "10.00"
            assert storage.load("loans", "missing") is None
            assert storage.exists("loans", "L2")
            assert storage.count("loans") == 2
            assert [r["amount"] for r in storage.find("loans", {"tenant_id": "T2"})] == ["20.00"]

            assert storage.delete("loans", "L1")
            assert not storage.delete("loans", "L1")
            storage.clear_table("loans")
            assert storage.count("loans") == 0
            storage.close()

    def test_atomic_rolls_back_every_table(self):
        for storage in self._backends():
            storage.save("loans", "L1", {"version": 0, "status": "activo"})

            with pytest.raises(RuntimeError):
                with storage.atomic():
                    storage.save("loan_installments", "I1", {"loan_id": "L1", "is_paid": True})
                    storage.save("loans", "L1", {"version": 1, "status": "al_dia"})
                    raise RuntimeError("crash between writes")

            assert storage.load("loans", "L1")["status"] == "activo"
            assert storage.load("loan_installments", "I1") is None
            storage.close()

    def test_atomic_commits(self):
        for storage in self._backends():
            with storage.atomic():
                storage.save("loans", "L1", {"version": 0})
                with storage.atomic():
                    storage.save("loans", "L2", {"version": 0})
            assert storage.count("loans") == 2
            storage.close()

    def test_compare_and_swap(self):
        for storage in self._backends():
            storage.save("loans", "L1", {"version": 0, "balance_due": "100.00"})

            storage.compare_and_swap("loans", "L1", {"version": 1, "balance_due": "50.00"}, 0)
            assert storage.load("loans", "L1")["balance_due"] == "50.00"

            with pytest.raises(ConcurrentModificationError):
                storage.compare_and_swap("loans", "L1", {"version": 1, "balance_due": "0.00"}, 0)
            assert storage.load("loans", "L1")["balance_due"] == "50.00"

            with pytest.raises(ConcurrentModificationError):
                storage.compare_and_swap("loans", "missing", {"version": 1}, 0)
            storage.close()

    def test_sqlite_persists_across_connections(self):
        storage = SQLiteStorage(self.db_path)
        storage.save("loans", "L1", {"version": 0})
        storage.close()

        reopened = SQLiteStorage(self.db_path)
        assert reopened.load("loans", "L1") == {"version": 0}
        reopened.close()


class TestInMemoryIsolation:
    """Loaded records are copies"""

    def test_mutating_loaded_record_does_not_change_storage(self):
        storage = InMemoryStorage()
        storage.save("loans", "L1", {"tags": ["a"]})
        record = storage.load("loans", "L1")
        record["tags"].append("b")
        assert storage.load("loans", "L1") == {"tags": ["a"]}


class TestStorageRecord:
    """Typed serialization"""

    def test_round_trip(self):
        now = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)
        record = SampleRecord(
            id="R1", created_at=now, updated_at=now,
            amount=Decimal('1970.17'), due_date=date(2024, 2, 1),
            period=PaymentPeriod.BIWEEKLY, paid_at=now
        )

        data = record.to_dict()
        assert data["amount"] == "1970.17"
        assert data["due_date"] == "2024-02-01"
        assert data["period"] == "biweekly"
        assert data["paid_at"] == now.isoformat()

        assert SampleRecord.from_dict(data) == record

    def test_optional_none_and_unknown_keys(self):
        now = datetime(2024, 2, 1, tzinfo=timezone.utc)
        data = SampleRecord(
            id="R1", created_at=now, updated_at=now,
            amount=Decimal('1.00'), due_date=date(2024, 2, 1), period=PaymentPeriod.WEEKLY
        ).to_dict()
        data["sequence"] = 7

        loaded = SampleRecord.from_dict(data)
        assert loaded.paid_at is None
        assert loaded.version == 0


class TestCreateStorage:
    """Backend selection from a database URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_in_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_file_url(self, tmp_path):
        path = tmp_path / "loans.db"
        storage = create_storage(f"sqlite:///{path}")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/financing")
