"""
Appointments Domain

Booking, the appointment status lifecycle, cancellation and explicit slot
release.
"""
