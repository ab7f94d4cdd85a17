from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .partner import Partner
from .slot import Slot, SlotStatus
from .customer import Customer
from .discount_code import DiscountCode, DiscountType
from .booking import Booking, BookingStatus
from .payment import Payment, PaymentStatus, PaymentType
