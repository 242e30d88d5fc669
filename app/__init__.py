"""
Clinic Booking Service

A FastAPI-based booking core for a clinic network: conflict-free doctor
slots, globally unique booking numbers and dense per-doctor queue numbers.
"""

__version__ = "1.0.0"
