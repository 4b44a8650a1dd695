import datetime as dt
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from hospital_ledger.core.database import Base
from hospital_ledger.models.appointment import Appointment, PaymentStatus
from hospital_ledger.models.invoice import Invoice
from hospital_ledger.models.payment import Payment
from hospital_ledger.schemas.appointment import AppointmentUpdate
from hospital_ledger.services.composition import build_ledger
from hospital_ledger.services.reconciliation_service import ReconciliationService


@contextmanager
def count_writes(engine):
    """Collect INSERT/UPDATE/DELETE statements executed on the engine."""
    writes = []

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            writes.append(statement)

    event.listen(engine, "before_cursor_execute", before_cursor_execute)
    try:
        yield writes
    finally:
        event.remove(engine, "before_cursor_execute", before_cursor_execute)


@pytest.fixture
def appointment(ledger, tokens, booking_request):
    return ledger.create_appointment(booking_request(), tokens.next_token())


def invoices_for(db, appointment):
    return db.query(Invoice).filter(Invoice.appointment_id == appointment.id).all()


def payments_for(db, appointment):
    return db.query(Payment).filter(Payment.appointment_id == appointment.id).all()


class TestPaymentReconciliation:

    def test_settle_creates_invoice_and_payment(self, db, reconciler, appointment):
        appointment.payment_status = PaymentStatus.PAID
        db.commit()

        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        assert outcome.invoice_created and outcome.payment_created
        invoice = outcome.invoice
        assert invoice.invoice_number.startswith("KBR-INV-")
        assert invoice.status == "paid"
        assert invoice.payment_status == "paid"
        assert invoice.total_amount == 500
        assert invoice.description.startswith("Medical Consultation: General Consultation with Dr. Mehta")
        assert len(invoice.items) == 1
        assert invoice.items[0].category == "Service"
        assert outcome.payment.amount == 500
        assert outcome.payment.invoice_id == invoice.id
        assert appointment.invoice_id == invoice.id

    def test_test_service_invoice_is_classified(self, ledger, tokens, booking_request, db):
        appointment = ledger.create_appointment(
            booking_request(serviceName="Lipid Profile", serviceType="Test"), tokens.next_token()
        )
        ledger.set_payment_status(appointment.id, PaymentStatus.PAID)

        invoice = invoices_for(db, appointment)[0]
        assert invoice.service_type == "Test"
        assert invoice.description.startswith("Medical Test: Lipid Profile - Appointment on ")
        assert invoice.items[0].category == "Test"
        assert invoice.items[0].description == "Medical Test - Lipid Profile"

    def test_consultation_invoice_is_classified_as_service(self, db, reconciler, appointment):
        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        assert outcome.invoice.service_type == "Service"
        assert outcome.invoice.items[0].description == "Medical Consultation - General Consultation"

    def test_settle_is_idempotent(self, db, reconciler, appointment):
        reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)
        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        assert not outcome.invoice_created
        assert not outcome.payment_created
        assert len(invoices_for(db, appointment)) == 1
        assert len(payments_for(db, appointment)) == 1

    def test_paid_pending_paid_keeps_single_records(self, db, ledger, appointment):
        ledger.set_payment_status(appointment.id, PaymentStatus.PAID)
        ledger.set_payment_status(appointment.id, PaymentStatus.PENDING)

        invoice = invoices_for(db, appointment)[0]
        assert invoice.status == "draft"
        assert invoice.payment_status == "pending"
        assert invoice.payment_date is None
        assert payments_for(db, appointment)[0].status == "pending"

        ledger.set_payment_status(appointment.id, PaymentStatus.PAID)

        invoices = invoices_for(db, appointment)
        payments = payments_for(db, appointment)
        assert len(invoices) == 1 and len(payments) == 1
        assert invoices[0].status == "paid"
        assert payments[0].status == "paid"

    def test_reverse_without_invoice_creates_nothing(self, db, reconciler, appointment):
        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PAID, PaymentStatus.PENDING)

        assert outcome.invoice is None
        assert outcome.payment is None
        assert db.query(Invoice).count() == 0

    def test_fee_change_updates_existing_payment(self, db, ledger, appointment):
        ledger.set_payment_status(appointment.id, PaymentStatus.PAID)
        ledger.set_payment_status(appointment.id, PaymentStatus.PENDING)
        ledger.update(appointment.id, AppointmentUpdate(fees=750, payment_override=True))
        ledger.set_payment_status(appointment.id, PaymentStatus.PAID)

        payment = payments_for(db, appointment)[0]
        assert payment.amount == 750


class TestLegacyRecords:

    def test_adopts_unlinked_invoice_mentioning_appointment(self, db, reconciler, appointment):
        legacy = Invoice(
            invoice_number="KBR-INV-202401-000001",
            patient_ref=appointment.patient_ref,
            description="Consultation",
            notes=f"Invoice auto-generated for appointment {appointment.id}",
            total_amount=500,
            status="draft",
            payment_status="pending",
        )
        db.add(legacy)
        db.commit()

        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        assert not outcome.invoice_created
        assert outcome.invoice.id == legacy.id
        assert outcome.invoice.appointment_id == appointment.id
        assert db.query(Invoice).count() == 1

    def test_does_not_adopt_invoice_of_another_appointment(self, db, reconciler, appointment):
        other = Invoice(
            invoice_number="KBR-INV-202401-000002",
            patient_ref=appointment.patient_ref,
            notes=f"Invoice auto-generated for appointment {appointment.id}2",
            total_amount=500,
            status="draft",
            payment_status="pending",
        )
        db.add(other)
        db.commit()

        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        assert outcome.invoice_created
        assert other.appointment_id is None

    def test_adopts_oldest_of_duplicate_candidates(self, db, reconciler, appointment):
        for n in (1, 2):
            db.add(Invoice(
                invoice_number=f"KBR-INV-202401-00000{n}",
                patient_ref=appointment.patient_ref,
                description=f"Token {appointment.token_number}",
                total_amount=500,
                status="draft",
                payment_status="pending",
            ))
        db.commit()

        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        assert outcome.invoice.invoice_number == "KBR-INV-202401-000001"

    def test_adopts_legacy_payment(self, db, reconciler, appointment):
        legacy = Payment(
            patient_ref=appointment.patient_ref,
            amount=500,
            status="pending",
            description=f"Consultation fee for appointment {appointment.id}",
        )
        db.add(legacy)
        db.commit()

        outcome = reconciler.on_payment_status_change(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        assert not outcome.payment_created
        assert outcome.payment.id == legacy.id
        assert outcome.payment.appointment_id == appointment.id
        assert outcome.payment.invoice_id == outcome.invoice.id


class TestBatchSynchronizer:

    def _invoice(self, number, status, payment_status):
        return Invoice(
            invoice_number=number,
            total_amount=100,
            status=status,
            payment_status=payment_status,
            issue_date=dt.date.today(),
        )

    def test_reconcile_all_corrects_drift(self, db, reconciler):
        db.add_all([
            self._invoice("INV-1", "draft", "paid"),
            self._invoice("INV-2", "paid", "pending"),
            self._invoice("INV-3", "paid", "paid"),
            self._invoice("INV-4", "paid", "refunded"),
        ])
        db.commit()

        report = reconciler.reconcile_all()

        assert report.scanned == 4
        assert report.corrected == 2
        statuses = {i.invoice_number: i.status for i in db.query(Invoice).all()}
        assert statuses == {"INV-1": "paid", "INV-2": "draft", "INV-3": "paid", "INV-4": "paid"}

    def test_second_run_writes_nothing(self, db, engine, reconciler):
        db.add_all([
            self._invoice("INV-1", "draft", "paid"),
            self._invoice("INV-2", "paid", "draft"),
        ])
        db.commit()
        reconciler.reconcile_all()

        with count_writes(engine) as writes:
            report = reconciler.reconcile_all()

        assert report.corrected == 0
        assert writes == []

    def test_reconcile_appointments_replays_deferred_change(self, db, ledger, reconciler, appointment):
        ledger.payment_listeners = []
        ledger.set_payment_status(appointment.id, PaymentStatus.PAID)
        assert invoices_for(db, appointment) == []

        report = reconciler.reconcile_appointments()

        assert report.corrected == 1
        invoices = invoices_for(db, appointment)
        assert len(invoices) == 1 and invoices[0].status == "paid"
        assert reconciler.reconcile_appointments().corrected == 0

    def test_list_invoices_and_payments(self, ledger, reconciler, appointment):
        ledger.set_payment_status(appointment.id, PaymentStatus.PAID)

        assert len(reconciler.list_invoices()) == 1
        assert len(reconciler.list_invoices(appointment_id=appointment.id)) == 1
        assert reconciler.list_invoices(appointment_id=999) == []
        assert len(reconciler.list_payments(appointment_id=appointment.id)) == 1


class TestConcurrentSettlement:
    """Two sessions reconciling the same appointment on separate connections."""

    @pytest.fixture
    def sessions(self, tmp_path, feed, booking_request):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        first, second = Session(), Session()

        ledger = build_ledger(first, feed)
        appointment = ledger.create_appointment(booking_request(), ledger.tokens.next_token())
        yield first, second, appointment.id

        first.close()
        second.close()
        engine.dispose()

    def test_losing_creator_adopts_winning_invoice(self, sessions, feed):
        first, second, appointment_id = sessions
        slow = ReconciliationService(first, feed)
        fast = ReconciliationService(second, feed)

        slow_view = first.get(Appointment, appointment_id)
        assert slow.find_invoice(slow_view) is None

        fast.on_payment_status_change(
            second.get(Appointment, appointment_id), PaymentStatus.PENDING, PaymentStatus.PAID
        )

        now = dt.datetime.utcnow()
        invoice, created = slow._create_invoice(slow_view, now)
        assert created is False
        assert invoice.appointment_id == appointment_id

        payment, payment_created = slow._settle_payment(slow_view, invoice, now)
        assert payment_created is False

        assert first.query(Invoice).count() == 1
        assert first.query(Payment).count() == 1

    def test_payment_insert_conflict_updates_existing(self, sessions, feed):
        first, second, appointment_id = sessions
        slow = ReconciliationService(first, feed)
        fast = ReconciliationService(second, feed)

        fast.on_payment_status_change(
            second.get(Appointment, appointment_id), PaymentStatus.PENDING, PaymentStatus.PAID
        )

        slow_view = first.get(Appointment, appointment_id)
        invoice = slow.find_invoice(slow_view)
        real_find = slow.find_payment
        stale = [None]

        def find_missing_once(appointment, linked_invoice):
            # First lookup ran before the other session's payment was visible
            if stale:
                return stale.pop()
            return real_find(appointment, linked_invoice)

        slow.find_payment = find_missing_once
        payment, created = slow._settle_payment(slow_view, invoice, dt.datetime.utcnow())

        assert created is False
        assert payment.status == "paid"
        assert first.query(Payment).count() == 1
