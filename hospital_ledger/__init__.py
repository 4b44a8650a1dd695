"""
Hospital Booking Ledger

A FastAPI service for hospital appointment booking: sequential patient
tokens, the appointment lifecycle, invoice and payment reconciliation,
and an offline queue for bookings taken without connectivity.
"""

__version__ = "1.0.0"
