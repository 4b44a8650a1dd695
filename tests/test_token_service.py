import re
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from hospital_ledger.core.database import Base
from hospital_ledger.core.errors import TransientNetworkError
from hospital_ledger.models.token import AppointmentToken, TokenCounter, TokenStatus
from hospital_ledger.services.token_service import TokenService


class TestTokenCounter:

    def test_first_token_starts_at_one(self, tokens):
        """A missing counter is created holding 1."""
        assert tokens.next_token() == "KBR-001"

    def test_tokens_are_sequential(self, tokens):
        issued = [tokens.next_token() for _ in range(3)]
        assert issued == ["KBR-001", "KBR-002", "KBR-003"]

    def test_continues_from_existing_counter(self, db, tokens):
        db.add(TokenCounter(name="appointmentCounter", value=41))
        db.commit()

        assert tokens.next_token() == "KBR-042"
        assert db.get(TokenCounter, "appointmentCounter").value == 42

    def test_padding_grows_past_three_digits(self, db, tokens):
        db.add(TokenCounter(name="appointmentCounter", value=999))
        db.commit()

        assert tokens.next_token() == "KBR-1000"

    def test_counter_is_separate_per_name(self, db):
        first = TokenService(db, counter_name="wardA")
        second = TokenService(db, counter_name="wardB")

        assert first.next_token() == "KBR-001"
        assert first.next_token() == "KBR-002"
        assert second.next_token() == "KBR-001"

    def test_unreachable_store_raises_transient_error(self, tokens):
        with patch.object(
            tokens, "_increment",
            side_effect=OperationalError("UPDATE token_counters", {}, Exception("connection refused"))
        ):
            with pytest.raises(TransientNetworkError) as exc_info:
                tokens.next_token()

        assert exc_info.value.operation == "next_token"

    def test_current_count(self, tokens):
        snapshot = tokens.current_count()
        assert snapshot.count == 0
        assert snapshot.last_token is None
        assert snapshot.next_token == "KBR-001"

        tokens.next_token()
        tokens.next_token()
        snapshot = tokens.current_count()
        assert snapshot.count == 2
        assert snapshot.last_token == "KBR-002"
        assert snapshot.next_token == "KBR-003"


class TestConcurrentAllocation:

    def test_concurrent_callers_get_distinct_consecutive_tokens(self, tmp_path):
        """N concurrent callers on a counter at C receive exactly C+1..C+N."""
        engine = create_engine(
            f"sqlite:///{tmp_path / 'counter.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        start, callers = 10, 20
        with Session() as setup:
            setup.add(TokenCounter(name="appointmentCounter", value=start))
            setup.commit()

        def allocate(_):
            with Session() as session:
                return TokenService(session).next_token()

        with ThreadPoolExecutor(max_workers=8) as pool:
            issued = list(pool.map(allocate, range(callers)))

        expected = {f"KBR-{str(n).zfill(3)}" for n in range(start + 1, start + callers + 1)}
        assert len(issued) == callers
        assert set(issued) == expected

        with Session() as check:
            assert check.get(TokenCounter, "appointmentCounter").value == start + callers
        engine.dispose()


class TestOfflineTokens:

    def test_offline_token_format(self, tokens):
        token = tokens.offline_token()
        assert re.fullmatch(r"KBR-OFF-\d{8}", token)
        assert tokens.is_offline_token(token)
        assert not tokens.is_offline_token("KBR-001")

    def test_offline_token_does_not_touch_counter(self, db, tokens):
        tokens.offline_token()
        assert db.get(TokenCounter, "appointmentCounter") is None


class TestTokenRecords:

    def test_booking_creates_token_record(self, db, ledger, tokens, booking_request):
        appointment = ledger.create_appointment(booking_request(), tokens.next_token())

        token = tokens.lookup("KBR-001")
        assert token is not None
        assert token.appointment_id == appointment.id
        assert token.patient_name == "Asha Rao"
        assert token.status == TokenStatus.ACTIVE

    def test_lookup_unknown_token(self, tokens):
        assert tokens.lookup("KBR-999") is None
        assert tokens.lookup("KBR-OFF-12345678") is None

    def test_offline_placeholder_resolves_to_synced_token(self, ledger, tokens, booking_request):
        ledger.create_appointment(booking_request(), tokens.next_token(), offline_token="KBR-OFF-12345678")

        token = tokens.lookup("KBR-OFF-12345678")
        assert token is not None
        assert token.token_number == "KBR-001"

    def test_list_tokens(self, db, ledger, tokens, booking_request):
        ledger.create_appointment(booking_request(), tokens.next_token())
        ledger.create_appointment(booking_request(patientName="Ravi Kumar"), tokens.next_token())

        listed = tokens.list_tokens()
        assert [t.token_number for t in listed] == ["KBR-002", "KBR-001"]
        assert db.query(AppointmentToken).count() == 2

    def test_mark_token(self, db, ledger, tokens, booking_request):
        ledger.create_appointment(booking_request(), tokens.next_token())

        tokens.mark("KBR-001", TokenStatus.USED)
        db.commit()

        assert tokens.lookup("KBR-001").status == TokenStatus.USED
        assert tokens.mark("KBR-404", TokenStatus.USED) is None
