"""
Identity Module

Users are a tagged union keyed by role: a customer carries a credit score
and KYC status, an admin carries a department. The engine consults only
customers (loan eligibility, credit score penalties); admins appear as the
actor of manual loan decisions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union
import re
import uuid

from .errors import NotFound, ValidationError
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class Role(Enum):
    """User roles"""
    CUSTOMER = "customer"
    ADMIN = "admin"


class KYCStatus(Enum):
    """KYC verification status"""
    PENDING = "pending"     # KYC submitted, under review
    VERIFIED = "verified"   # KYC approved
    REJECTED = "rejected"   # KYC rejected


@dataclass
class CustomerProfile:
    """Customer-only attributes"""
    credit_score: int = 0
    kyc_status: KYCStatus = KYCStatus.PENDING


@dataclass
class AdminProfile:
    """Admin-only attributes"""
    department: Optional[str] = None


Profile = Union[CustomerProfile, AdminProfile]

_PROFILE_TYPES = {
    Role.CUSTOMER: CustomerProfile,
    Role.ADMIN: AdminProfile,
}

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


@dataclass
class User(StorageRecord):
    """A customer or an admin; ``profile`` always matches ``role``"""
    email: str
    first_name: str
    last_name: str
    role: Role
    profile: Profile
    is_active: bool = True

    def __post_init__(self):
        if not re.match(EMAIL_PATTERN, self.email):
            raise ValidationError(f"Invalid email address: {self.email}", "INVALID_EMAIL")
        if not isinstance(self.profile, _PROFILE_TYPES[self.role]):
            raise ValidationError(
                f"{self.role.value} user requires a {_PROFILE_TYPES[self.role].__name__}",
                "INVALID_PROFILE"
            )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_customer(self) -> bool:
        return self.role == Role.CUSTOMER

    @property
    def customer_profile(self) -> CustomerProfile:
        if not isinstance(self.profile, CustomerProfile):
            raise NotFound(f"User {self.id} is not a customer", "USER_NOT_FOUND")
        return self.profile

    def to_dict(self) -> Dict:
        result = super().to_dict()
        if isinstance(self.profile, CustomerProfile):
            result['profile'] = {
                'credit_score': self.profile.credit_score,
                'kyc_status': self.profile.kyc_status.value,
            }
        else:
            result['profile'] = {'department': self.profile.department}
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'User':
        role = Role(data['role'])
        profile_data = data.get('profile') or {}
        if role == Role.CUSTOMER:
            profile = CustomerProfile(
                credit_score=int(profile_data.get('credit_score', 0)),
                kyc_status=KYCStatus(profile_data.get('kyc_status', KYCStatus.PENDING.value)),
            )
        else:
            profile = AdminProfile(department=profile_data.get('department'))

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            email=data['email'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            role=role,
            profile=profile,
            is_active=data.get('is_active', True),
        )


class UserDirectory(ABC):
    """Identity lookup used by the engine"""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        """Return the user or None"""
        pass

    @abstractmethod
    def save_user(self, user: User) -> None:
        """Persist a user"""
        pass

    @abstractmethod
    def list_users(self, role: Optional[Role] = None) -> List[User]:
        """List users, optionally restricted to one role"""
        pass

    def get_customer(self, user_id: str) -> User:
        """Return an active customer or raise NotFound (admins do not qualify)"""
        user = self.get_user(user_id)
        if user is None or not user.is_customer or not user.is_active:
            raise NotFound(f"User {user_id} not found", "USER_NOT_FOUND")
        return user

    def get_admin(self, user_id: str) -> User:
        """Return an active admin or raise NotFound"""
        user = self.get_user(user_id)
        if user is None or user.role != Role.ADMIN or not user.is_active:
            raise NotFound(f"Admin {user_id} not found", "ADMIN_NOT_FOUND")
        return user

    def adjust_credit_score(self, user_id: str, delta: int, minimum: int = 0) -> User:
        """Add ``delta`` to a customer's credit score, never going below ``minimum``"""
        user = self.get_customer(user_id)
        profile = user.customer_profile
        profile.credit_score = max(minimum, profile.credit_score + delta)
        user.updated_at = datetime.now(timezone.utc)
        self.save_user(user)
        return user

    def update_kyc_status(self, user_id: str, kyc_status: KYCStatus) -> User:
        user = self.get_customer(user_id)
        user.customer_profile.kyc_status = kyc_status
        user.updated_at = datetime.now(timezone.utc)
        self.save_user(user)
        return user


class StorageUserDirectory(UserDirectory):
    """UserDirectory backed by the shared storage"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "users"
        self.logger = get_logger("fincore.identity")

    def get_user(self, user_id: str) -> Optional[User]:
        user_dict = self.storage.load(self.table_name, user_id)
        if user_dict and not user_dict.get('deleted_at'):
            return User.from_dict(user_dict)
        return None

    def save_user(self, user: User) -> None:
        self.storage.save(self.table_name, user.id, user.to_dict())

    def list_users(self, role: Optional[Role] = None) -> List[User]:
        filters = {'role': role.value} if role else {}
        return [User.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def get_user_by_email(self, email: str) -> Optional[User]:
        users = self.storage.find(self.table_name, {"email": email})
        if users:
            return User.from_dict(users[0])
        return None

    def create_customer(
        self,
        email: str,
        first_name: str,
        last_name: str,
        credit_score: int = 0,
        kyc_status: KYCStatus = KYCStatus.PENDING
    ) -> User:
        """Register a customer"""
        return self._create(
            email, first_name, last_name, Role.CUSTOMER,
            CustomerProfile(credit_score=credit_score, kyc_status=kyc_status)
        )

    def create_admin(self, email: str, first_name: str, last_name: str,
                     department: Optional[str] = None) -> User:
        """Register an admin"""
        return self._create(email, first_name, last_name, Role.ADMIN, AdminProfile(department=department))

    def _create(self, email: str, first_name: str, last_name: str, role: Role, profile: Profile) -> User:
        if self.get_user_by_email(email):
            raise ValidationError(f"Email {email} is already registered", "EMAIL_ALREADY_EXISTS")

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            profile=profile,
        )
        self.save_user(user)

        log_action(
            self.logger, "info", f"Registered {role.value} {user.id}",
            user_id=user.id, action="user_created", resource=f"user:{user.id}"
        )
        return user
