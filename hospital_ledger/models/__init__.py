from .appointment import Appointment, AppointmentStatus, PaymentMode, PaymentStatus, ServiceType
from .token import AppointmentToken, TokenCounter, TokenStatus
from .invoice import Invoice, InvoiceItem, InvoiceStatus, InvoicePaymentStatus
from .payment import Payment, PaymentRecordStatus
from .offline_booking import OfflineBooking, SyncStatus
