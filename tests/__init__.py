"""
Test suite for the Clinic Booking Service.
"""
