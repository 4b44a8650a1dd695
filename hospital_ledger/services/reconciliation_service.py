from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, NamedTuple, Optional
import logging
import re
import time

from ..core.config import settings
from ..core.database import STORE_UNAVAILABLE
from ..core.errors import InvariantViolation, TransientNetworkError
from ..models.appointment import Appointment, PaymentStatus, ServiceType
from ..models.invoice import (
    Invoice, InvoiceItem, InvoiceStatus, InvoicePaymentStatus, INVOICE_STATUS_FOR_PAYMENT
)
from ..models.payment import Payment, PaymentRecordStatus
from ..schemas.billing import ReconciliationReport
from .change_feed import ChangeFeed

logger = logging.getLogger(__name__)

class ReconciliationOutcome(NamedTuple):
    invoice: Optional[Invoice]
    payment: Optional[Payment]
    invoice_created: bool = False
    payment_created: bool = False

class ReconciliationService:
    """Keeps one Payment and one Invoice per appointment in step with its payment status.

    Every path searches before it creates. Creation relies on the unique
    ``appointment_id`` of invoices and the unique (appointment, invoice) pair
    of payments, so a concurrent creator loses with an IntegrityError and
    adopts the winner's record.
    """

    CREATE_ATTEMPTS = 3

    def __init__(self, db: Session, feed: Optional[ChangeFeed] = None, prefix: Optional[str] = None):
        self.db = db
        self.feed = feed or ChangeFeed()
        self.prefix = prefix or settings.TOKEN_PREFIX

    def attach(self, ledger) -> None:
        """Subscribe to payment-status changes published by the appointment ledger."""
        ledger.add_payment_listener(self.on_payment_status_change)

    def on_payment_status_change(
        self,
        appointment: Appointment,
        old_status: PaymentStatus,
        new_status: PaymentStatus,
    ) -> ReconciliationOutcome:
        logger.info(
            f"Reconciling appointment {appointment.id}: "
            f"{old_status.value} -> {new_status.value}"
        )
        try:
            if new_status == PaymentStatus.PAID:
                return self._settle(appointment)
            if new_status == PaymentStatus.PENDING:
                return self._reverse(appointment)
            return self._refund(appointment)
        except STORE_UNAVAILABLE as e:
            self.db.rollback()
            raise TransientNetworkError(
                "Payment records unreachable",
                operation="on_payment_status_change",
                entity=f"appointments/{appointment.id}",
            ) from e

    # Lookups

    def find_invoice(self, appointment: Appointment, adopt: bool = True) -> Optional[Invoice]:
        invoice = self.db.query(Invoice).filter(
            Invoice.appointment_id == appointment.id
        ).first()
        if invoice is not None:
            return invoice

        candidates = []
        if appointment.invoice_id is not None:
            linked = self.db.get(Invoice, appointment.invoice_id)
            if linked is not None and linked.appointment_id is None:
                candidates.append(linked)

        if not candidates:
            candidates = self._legacy_matches(
                self.db.query(Invoice).filter(
                    Invoice.appointment_id.is_(None),
                    Invoice.patient_ref == appointment.patient_ref,
                ).order_by(Invoice.id).all(),
                appointment,
            )
        if not candidates:
            return None

        if len(candidates) > 1:
            violation = InvariantViolation(
                f"{len(candidates)} unlinked invoices match appointment {appointment.id}",
                operation="find_invoice",
                entity=f"appointments/{appointment.id}",
            )
            logger.warning(f"{violation.message}; adopting the oldest ({violation.context()})")

        invoice = candidates[0]
        if adopt:
            logger.info(f"Adopting unlinked invoice {invoice.invoice_number} for appointment {appointment.id}")
            invoice.appointment_id = appointment.id
        return invoice

    def find_payment(self, appointment: Appointment, invoice: Optional[Invoice]) -> Optional[Payment]:
        payment = self.db.query(Payment).filter(
            Payment.appointment_id == appointment.id
        ).order_by(Payment.id).first()
        if payment is not None:
            return payment

        if invoice is not None and invoice.id is not None:
            payment = self.db.query(Payment).filter(
                Payment.invoice_id == invoice.id
            ).order_by(Payment.id).first()

        if payment is None:
            # The patient's aggregate payment record from before explicit links
            matches = self._legacy_matches(
                self.db.query(Payment).filter(
                    Payment.appointment_id.is_(None),
                    Payment.patient_ref == appointment.patient_ref,
                ).order_by(Payment.id).all(),
                appointment,
            )
            payment = matches[0] if matches else None

        if payment is not None:
            payment.appointment_id = appointment.id
            if invoice is not None and payment.invoice_id is None:
                payment.invoice_id = invoice.id
        return payment

    @staticmethod
    def _legacy_matches(records: List, appointment: Appointment) -> List:
        markers = [f"appointment {appointment.id}"]
        if appointment.token_number:
            markers.append(appointment.token_number)
        pattern = re.compile(
            "|".join(rf"\b{re.escape(marker)}\b" for marker in markers),
            re.IGNORECASE,
        )

        matches = []
        for record in records:
            text = " ".join(
                filter(None, [record.description, getattr(record, "notes", None)])
            )
            if pattern.search(text):
                matches.append(record)
        return matches

    # Transitions

    def _settle(self, appointment: Appointment) -> ReconciliationOutcome:
        now = datetime.utcnow()
        invoice = self.find_invoice(appointment)
        invoice_created = False

        if invoice is None:
            invoice, invoice_created = self._create_invoice(appointment, now)
        else:
            invoice.status = InvoiceStatus.PAID.value
            invoice.payment_status = InvoicePaymentStatus.PAID.value
            invoice.payment_mode = appointment.payment_mode.value
            invoice.payment_date = now

        appointment.invoice_id = invoice.id
        appointment.invoice_number = invoice.invoice_number
        self.db.commit()

        payment, payment_created = self._settle_payment(appointment, invoice, now)

        self.feed.invoice_changed(invoice, "created" if invoice_created else "updated")
        logger.info(
            f"Appointment {appointment.id} settled: invoice={invoice.invoice_number} "
            f"(created={invoice_created}) payment={payment.id} (created={payment_created})"
        )
        return ReconciliationOutcome(invoice, payment, invoice_created, payment_created)

    def _reverse(self, appointment: Appointment) -> ReconciliationOutcome:
        invoice = self.find_invoice(appointment)
        if invoice is not None:
            invoice.status = InvoiceStatus.DRAFT.value
            invoice.payment_status = InvoicePaymentStatus.PENDING.value
            invoice.payment_date = None

        payment = self.find_payment(appointment, invoice)
        if payment is not None:
            payment.status = PaymentRecordStatus.PENDING.value
            payment.paid_at = None

        self.db.commit()
        if invoice is not None:
            self.feed.invoice_changed(invoice, "updated")
        logger.info(f"Appointment {appointment.id} payment reversed to pending")
        return ReconciliationOutcome(invoice, payment)

    def _refund(self, appointment: Appointment) -> ReconciliationOutcome:
        invoice = self.find_invoice(appointment)
        if invoice is not None:
            # status stays as issued; the refund is recorded beside it
            invoice.payment_status = InvoicePaymentStatus.REFUNDED.value

        payment = self.find_payment(appointment, invoice)
        if payment is not None:
            payment.status = PaymentRecordStatus.REFUNDED.value

        self.db.commit()
        logger.info(f"Appointment {appointment.id} payment refunded")
        return ReconciliationOutcome(invoice, payment)

    # Creation

    def _create_invoice(self, appointment: Appointment, now: datetime):
        for attempt in range(self.CREATE_ATTEMPTS):
            invoice = self._build_invoice(appointment, now, attempt)
            self.db.add(invoice)
            try:
                self.db.commit()
                logger.info(f"Generated invoice {invoice.invoice_number} for appointment {appointment.id}")
                return invoice, True
            except IntegrityError:
                self.db.rollback()

            existing = self.db.query(Invoice).filter(
                Invoice.appointment_id == appointment.id
            ).first()
            if existing is not None:
                # A concurrent reconciliation created it first
                logger.info(f"Invoice for appointment {appointment.id} created concurrently; reusing {existing.invoice_number}")
                existing.status = InvoiceStatus.PAID.value
                existing.payment_status = InvoicePaymentStatus.PAID.value
                existing.payment_date = now
                return existing, False

        raise InvariantViolation(
            "Could not allocate a unique invoice number",
            operation="create_invoice",
            entity=f"appointments/{appointment.id}",
        )

    def invoice_number(self, now: datetime, attempt: int = 0) -> str:
        stamp = (int(time.time() * 1000) + attempt) % 1000000
        return f"{self.prefix}-INV-{now.strftime('%Y%m')}-{str(stamp).zfill(6)}"

    def _build_invoice(self, appointment: Appointment, now: datetime, attempt: int) -> Invoice:
        service = appointment.service_name or "Medical Service"
        doctor = appointment.doctor_name or "Doctor"
        amount = appointment.fees or 0
        appointment_date = appointment.scheduled_at.strftime("%Y-%m-%d")
        is_test = appointment.service_type == ServiceType.TEST
        if is_test:
            description = f"Medical Test: {service} - Appointment on {appointment_date}"
        else:
            description = f"Medical Consultation: {service} with {doctor} - Appointment on {appointment_date}"

        invoice = Invoice(
            invoice_number=self.invoice_number(now, attempt),
            appointment_id=appointment.id,
            patient_ref=appointment.patient_ref,
            patient_name=appointment.patient_name,
            patient_phone=appointment.phone,
            doctor_name=appointment.doctor_name,
            service_name=service,
            service_type=(appointment.service_type or ServiceType.SERVICE).value,
            description=description,
            issue_date=now.date(),
            due_date=now.date(),
            subtotal=amount,
            total_amount=amount,
            status=InvoiceStatus.PAID.value,
            payment_status=InvoicePaymentStatus.PAID.value,
            payment_mode=appointment.payment_mode.value,
            payment_date=now,
            notes=f"Invoice auto-generated for appointment {appointment.id}",
            generated_by="system",
        )
        invoice.items.append(InvoiceItem(
            name=service,
            description=f"Medical Test - {service}" if is_test else f"Medical Consultation - {service}",
            category=ServiceType.TEST.value if is_test else ServiceType.SERVICE.value,
            quantity=1,
            unit_price=amount,
            amount=amount,
        ))
        return invoice

    def _settle_payment(self, appointment: Appointment, invoice: Invoice, now: datetime):
        for _ in range(2):
            payment = self.find_payment(appointment, invoice)
            if payment is not None:
                payment.status = PaymentRecordStatus.PAID.value
                payment.amount = appointment.fees or 0
                payment.method = appointment.payment_mode.value
                payment.paid_at = now
                self.db.commit()
                return payment, False

            payment = Payment(
                appointment_id=appointment.id,
                invoice_id=invoice.id,
                patient_ref=appointment.patient_ref,
                amount=appointment.fees or 0,
                method=appointment.payment_mode.value,
                status=PaymentRecordStatus.PAID.value,
                description=f"Payment for appointment {appointment.id} ({appointment.token_number})",
                paid_at=now,
            )
            self.db.add(payment)
            try:
                self.db.commit()
                return payment, True
            except IntegrityError:
                # Lost a race with another reconciliation; update theirs instead
                self.db.rollback()

        raise InvariantViolation(
            "Payment could be neither found nor created",
            operation="settle_payment",
            entity=f"appointments/{appointment.id}",
        )

    # Reads

    def list_invoices(self, appointment_id: Optional[int] = None) -> List[Invoice]:
        query = self.db.query(Invoice)
        if appointment_id is not None:
            query = query.filter(Invoice.appointment_id == appointment_id)
        return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()

    def list_payments(self, appointment_id: Optional[int] = None) -> List[Payment]:
        query = self.db.query(Payment)
        if appointment_id is not None:
            query = query.filter(Payment.appointment_id == appointment_id)
        return query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()

    # Batch synchronizer

    def reconcile_all(self) -> ReconciliationReport:
        """Rewrite each invoice's status to match its payment_status.

        Commits only when something was corrected, so a second run over
        consistent data writes nothing.
        """
        invoices = self.db.query(Invoice).order_by(Invoice.id).all()
        corrected = []
        for invoice in invoices:
            expected = INVOICE_STATUS_FOR_PAYMENT.get(invoice.payment_status)
            if expected is not None and invoice.status != expected:
                logger.info(
                    f"Invoice {invoice.invoice_number} drifted: status={invoice.status} "
                    f"payment_status={invoice.payment_status}; setting status={expected}"
                )
                invoice.status = expected
                corrected.append(invoice)

        if corrected:
            self.db.commit()
            for invoice in corrected:
                self.feed.invoice_changed(invoice, "reconciled")

        logger.info(f"Invoice sync complete: scanned={len(invoices)} corrected={len(corrected)}")
        return ReconciliationReport(scanned=len(invoices), corrected=len(corrected))

    def reconcile_appointments(self) -> ReconciliationReport:
        """Replay payment reconciliation for appointments whose invoice disagrees.

        Picks up changes whose reconciliation was deferred because the
        payment records were unreachable at the time.
        """
        appointments = self.db.query(Appointment).filter(
            Appointment.payment_status.in_([PaymentStatus.PAID, PaymentStatus.PENDING])
        ).order_by(Appointment.id).all()

        corrected = 0
        for appointment in appointments:
            invoice = self.find_invoice(appointment, adopt=False)
            if appointment.payment_status == PaymentStatus.PAID:
                drifted = invoice is None or invoice.status != InvoiceStatus.PAID.value
            else:
                drifted = invoice is not None and invoice.status != InvoiceStatus.DRAFT.value
            if drifted:
                self.on_payment_status_change(
                    appointment, appointment.payment_status, appointment.payment_status
                )
                corrected += 1

        logger.info(f"Appointment sync complete: scanned={len(appointments)} corrected={corrected}")
        return ReconciliationReport(scanned=len(appointments), corrected=corrected)
