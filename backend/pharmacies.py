# pharmacies.py
import logging
from typing import List

from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import ApprovalStatus, Pharmacy

logger = logging.getLogger(__name__)


def register_pharmacy(db: Session, vendor_id: str, data) -> Pharmacy:
    """New pharmacies wait for admin approval before they can be ordered from."""
    pharmacy = Pharmacy(
        owner_id=vendor_id,
        name=data.name.strip(),
        address=data.address.strip(),
        contact_number=data.contact_number,
        license_number=data.license_number,
        latitude=data.latitude,
        longitude=data.longitude,
        approval_status=ApprovalStatus.PENDING,
    )
    db.add(pharmacy)
    db.commit()
    db.refresh(pharmacy)
    logger.info("Pharmacy %s registered by vendor %s", pharmacy.id, vendor_id)
    return pharmacy


def list_vendor_pharmacies(db: Session, vendor_id: str) -> List[Pharmacy]:
    return db.query(Pharmacy).filter(Pharmacy.owner_id == vendor_id).order_by(Pharmacy.id).all()


def set_pharmacy_approval(db: Session, pharmacy_id: int, status: str) -> Pharmacy:
    if status not in ApprovalStatus.ALL:
        raise ValidationError("Invalid approval status")
    pharmacy = db.get(Pharmacy, pharmacy_id)
    if pharmacy is None:
        raise NotFoundError("Pharmacy not found")
    pharmacy.approval_status = status
    db.commit()
    db.refresh(pharmacy)
    return pharmacy
