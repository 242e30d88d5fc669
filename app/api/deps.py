from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..core.database import get_db, get_redis, get_session_factory
from ..services.booking_service import BookingService
from ..services.sequence_allocator import SequenceAllocator, build_sequence_allocator

def get_sequence_allocator(
    session_factory: sessionmaker = Depends(get_session_factory),
    redis_client = Depends(get_redis)
) -> SequenceAllocator:
    """Counter store selected by ``SEQUENCE_BACKEND``."""
    return build_sequence_allocator(session_factory, redis_client, settings)

def get_booking_service(
    db: Session = Depends(get_db),
    allocator: SequenceAllocator = Depends(get_sequence_allocator)
) -> BookingService:
    """Booking service bound to the request's database session."""
    return BookingService(db, allocator, settings)
