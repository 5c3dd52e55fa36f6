"""Entity types of the local store and their field-level rules.

Every entity carries the same bookkeeping columns (id, timestamps, sync status and the
remote revision last acknowledged) plus its own domain fields. Each entity class
declares its domain fields with a storage kind; the kind drives conversion to SQLite
rows and to remote record fields, so the store and the sync engine never inspect
concrete classes.
"""
import base64
import calendar
import dataclasses
import datetime
import decimal
import enum
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type

from ..status import status

MAX_TRANSACTION_AMOUNT = decimal.Decimal('1000000')
MAX_BUDGET_AMOUNT = decimal.Decimal('10000000')
MAX_CATEGORY_NAME_LENGTH = 50
MAX_ICON_LENGTH = 50
MAX_BUDGET_NAME_LENGTH = 100
MAX_USER_NAME_LENGTH = 100
MAX_NOTES_LENGTH = 500

DEFAULT_CURRENCY = 'USD'
DEFAULT_COLOR = '#007AFF'
DEFAULT_ICON = 'folder'
DEFAULT_USER_NAME = 'Default User'

CATEGORY_TYPES: Tuple[str, ...] = ('income', 'expense')
TRANSACTION_TYPES: Tuple[str, ...] = ('income', 'expense', 'transfer')
BUDGET_PERIODS: Tuple[str, ...] = ('daily', 'weekly', 'monthly', 'quarterly', 'yearly')

# name, icon, color, type, sort order
DEFAULT_CATEGORIES: List[Tuple[str, str, str, str, int]] = [
    ('Food & Dining', 'fork.knife', '#FF6B6B', 'expense', 1),
    ('Transportation', 'car.fill', '#4ECDC4', 'expense', 2),
    ('Shopping', 'bag.fill', '#45B7D1', 'expense', 3),
    ('Entertainment', 'tv.fill', '#96CEB4', 'expense', 4),
    ('Bills & Utilities', 'doc.text.fill', '#FFEAA7', 'expense', 5),
    ('Healthcare', 'heart.fill', '#DDA0DD', 'expense', 6),
    ('Education', 'book.fill', '#74B9FF', 'expense', 7),
    ('Travel', 'airplane', '#FD79A8', 'expense', 8),
    ('Other Expenses', 'questionmark.circle.fill', '#95A5A6', 'expense', 9),
    ('Salary', 'dollarsign.circle.fill', '#00B894', 'income', 1),
    ('Freelance', 'briefcase.fill', '#0984E3', 'income', 2),
    ('Investments', 'chart.line.uptrend.xyaxis', '#6C5CE7', 'income', 3),
    ('Business', 'building.2.fill', '#E17055', 'income', 4),
    ('Other Income', 'plus.circle.fill', '#A29BFE', 'income', 5),
]


class EntityType(enum.StrEnum):
    """Enum of entity types, in push dependency order."""
    User = 'User'
    Category = 'Category'
    Transaction = 'Transaction'
    Budget = 'Budget'


class SyncStatus(enum.StrEnum):
    """Enum of sync status tags."""
    Pending = 'pending'
    Synced = 'synced'
    Failed = 'failed'
    Deleted = 'deleted'


TRACKABLE_TYPES: Tuple[EntityType, ...] = (EntityType.Category, EntityType.Transaction, EntityType.Budget)

# Columns shared by every entity table
COMMON_COLUMNS: Dict[str, str] = {
    'id': 'text',
    'created_at': 'datetime',
    'updated_at': 'datetime',
    'sync_status': 'status',
    'remote_change_tag': 'text',
    'remote_modified_at': 'datetime',
}


def now() -> datetime.datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Return value as an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def to_datetime(value: Any, label: str) -> datetime.datetime:
    """Convert a date field value to an aware UTC datetime.

    Plain dates are taken to mean midnight UTC.

    Raises:
        status.ValidationError: If the value is not a date or datetime.
    """
    if isinstance(value, datetime.datetime):
        return as_utc(value)
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time.min, tzinfo=datetime.timezone.utc)
    raise status.ValidationError(
        status.ValidationKind.InvalidDate, f'{label} must be a date or datetime, got {value!r}.'
    )


def parse_datetime(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO 8601 string (or pass through a datetime) into an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        return as_utc(value)
    return as_utc(datetime.datetime.fromisoformat(str(value)))


def is_valid_hex_color(value: str) -> bool:
    """Check if a string is a valid hexadecimal color in #RRGGBB format.

    Args:
        value (str): Color string to validate.

    Returns:
        bool: True if value matches '#RRGGBB', False otherwise.
    """
    return isinstance(value, str) and bool(re.fullmatch(r'#[0-9A-Fa-f]{6}', value))


def add_months(value: datetime.datetime, months: int) -> datetime.datetime:
    """Add calendar months to a datetime, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_end_date(start_date: datetime.datetime, period: str) -> datetime.datetime:
    """Return the end date of a budget period starting at start_date.

    Args:
        start_date: First day of the period.
        period: One of BUDGET_PERIODS.

    Returns:
        datetime.datetime: start_date advanced by one period.

    Raises:
        ValueError: If period is not a known budget period.
    """
    if period == 'daily':
        return start_date + datetime.timedelta(days=1)
    if period == 'weekly':
        return start_date + datetime.timedelta(weeks=1)
    if period == 'monthly':
        return add_months(start_date, 1)
    if period == 'quarterly':
        return add_months(start_date, 3)
    if period == 'yearly':
        return add_months(start_date, 12)
    raise ValueError(f'Unknown budget period "{period}".')


def to_decimal(value: Any) -> decimal.Decimal:
    """Convert a number-like value to Decimal.

    Raises:
        status.ValidationError: If the value is not a finite number.
    """
    if isinstance(value, decimal.Decimal):
        result = value
    else:
        try:
            result = decimal.Decimal(str(value))
        except (decimal.InvalidOperation, ValueError) as ex:
            raise status.ValidationError(
                status.ValidationKind.InvalidAmount, f'"{value}" is not a number.'
            ) from ex
    if not result.is_finite():
        raise status.ValidationError(status.ValidationKind.InvalidAmount, f'"{value}" is not a finite number.')
    return result


def encode_sql(kind: str, value: Any) -> Any:
    """Convert a field value to its SQLite column representation."""
    if value is None:
        return None
    if kind == 'decimal':
        return str(value)
    if kind == 'datetime':
        return as_utc(value).isoformat()
    if kind in ('bool', 'int'):
        return int(value)
    if kind == 'blob':
        return bytes(value)
    return str(value)


def decode_sql(kind: str, value: Any) -> Any:
    """Convert a SQLite column value to its field representation."""
    if value is None:
        return None
    if kind == 'decimal':
        return decimal.Decimal(str(value))
    if kind == 'datetime':
        return parse_datetime(value)
    if kind == 'bool':
        return bool(value)
    if kind == 'int':
        return int(value)
    if kind == 'blob':
        return bytes(value)
    if kind == 'status':
        return SyncStatus(value)
    return str(value)


def encode_field(kind: str, value: Any) -> Any:
    """Convert a field value to a JSON-compatible remote record value."""
    if value is None:
        return None
    if kind == 'blob':
        return base64.b64encode(bytes(value)).decode('ascii')
    if kind == 'bool':
        return bool(value)
    return encode_sql(kind, value)


def decode_field(kind: str, value: Any) -> Any:
    """Convert a remote record value back to its field representation."""
    if value is None:
        return None
    if kind == 'blob':
        return base64.b64decode(value)
    if kind == 'bool':
        return bool(value)
    return decode_sql(kind, value)


@dataclass
class Entity:
    """Base class of the four stored entity types.

    Subclasses declare ``entity_type``, ``table`` and ``FIELDS``, a mapping of domain
    field names to their storage kind. ``LOCAL_FIELDS`` lists domain fields that stay on
    this device and are never sent to the remote store.
    """
    id: str = field(default_factory=new_id)
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    sync_status: SyncStatus = SyncStatus.Pending
    remote_change_tag: Optional[str] = None
    remote_modified_at: Optional[datetime.datetime] = None

    entity_type: ClassVar[EntityType]
    table: ClassVar[str]
    FIELDS: ClassVar[Dict[str, str]] = {}
    LOCAL_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @classmethod
    def columns(cls) -> Dict[str, str]:
        """Return every column of the entity's table mapped to its storage kind."""
        return {**COMMON_COLUMNS, **cls.FIELDS}

    @classmethod
    def remote_fields(cls) -> Dict[str, str]:
        """Return the fields exchanged with the remote store mapped to their storage kind."""
        result = {'created_at': 'datetime', 'updated_at': 'datetime'}
        result.update({k: v for k, v in cls.FIELDS.items() if k not in cls.LOCAL_FIELDS})
        return result

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Entity':
        """Build an entity from a SQLite row."""
        kwargs = {name: decode_sql(kind, row[name]) for name, kind in cls.columns().items()}
        return cls(**kwargs)

    def to_row(self) -> Dict[str, Any]:
        """Return the entity as a column -> SQLite value mapping."""
        return {name: encode_sql(kind, getattr(self, name)) for name, kind in self.columns().items()}

    def to_record_fields(self) -> Dict[str, Any]:
        """Return the fields sent to the remote store."""
        return {name: encode_field(kind, getattr(self, name)) for name, kind in self.remote_fields().items()}

    def apply_remote_fields(self, fields: Mapping[str, Any]) -> 'Entity':
        """Return a copy of the entity with the given remote fields applied.

        Fields missing from ``fields`` keep their local values. The result still has to
        pass the store's validation before it is written.

        Raises:
            status.DataCorruptionError: If a field value cannot be decoded.
        """
        result = dataclasses.replace(self)
        for name, kind in self.remote_fields().items():
            if name not in fields:
                continue
            try:
                setattr(result, name, decode_field(kind, fields[name]))
            except (ValueError, TypeError, decimal.InvalidOperation) as ex:
                raise status.DataCorruptionError(
                    f'Cannot decode {self.entity_type} field "{name}" = {fields[name]!r}: {ex}'
                ) from ex
        return result

    def normalize(self) -> None:
        """Coerce field values to their canonical types and recompute derived fields."""
        pass

    def validate(self, now: datetime.datetime) -> None:
        """Check field-level constraints.

        Args:
            now: The current time, used for checks against the future.

        Raises:
            status.ValidationError: If a constraint is violated.
        """
        pass

    def references(self) -> Dict[str, EntityType]:
        """Return the reference fields of the entity mapped to the entity type they point to."""
        return {}


def _require(condition: bool, kind: status.ValidationKind, message: str) -> None:
    if not condition:
        raise status.ValidationError(kind, message)


@dataclass
class User(Entity):
    currency_code: str = DEFAULT_CURRENCY
    name: Optional[str] = None
    preferences: Optional[bytes] = None
    remote_record_id: Optional[str] = None
    last_sync_date: Optional[datetime.datetime] = None

    entity_type: ClassVar[EntityType] = EntityType.User
    table: ClassVar[str] = 'users'
    FIELDS: ClassVar[Dict[str, str]] = {
        'currency_code': 'text',
        'name': 'text',
        'preferences': 'blob',
        'remote_record_id': 'text',
        'last_sync_date': 'datetime',
    }
    LOCAL_FIELDS: ClassVar[Tuple[str, ...]] = ('remote_record_id', 'last_sync_date')

    def validate(self, now: datetime.datetime) -> None:
        _require(
            isinstance(self.currency_code, str) and bool(re.fullmatch(r'[A-Z]{3}', self.currency_code)),
            status.ValidationKind.InvalidCurrency,
            f'Currency code must be three upper-case letters, got "{self.currency_code}".'
        )
        _require(
            self.name is None or len(self.name) <= MAX_USER_NAME_LENGTH,
            status.ValidationKind.InvalidName,
            f'User name must be at most {MAX_USER_NAME_LENGTH} characters.'
        )


@dataclass
class Category(Entity):
    user_id: Optional[str] = None
    name: str = ''
    type: str = 'expense'
    color: str = DEFAULT_COLOR
    icon: str = DEFAULT_ICON
    is_default: bool = False
    sort_order: int = 0

    entity_type: ClassVar[EntityType] = EntityType.Category
    table: ClassVar[str] = 'categories'
    FIELDS: ClassVar[Dict[str, str]] = {
        'user_id': 'text',
        'name': 'text',
        'type': 'text',
        'color': 'text',
        'icon': 'text',
        'is_default': 'bool',
        'sort_order': 'int',
    }

    def normalize(self) -> None:
        if isinstance(self.name, str):
            self.name = self.name.strip()
        if isinstance(self.icon, str):
            self.icon = self.icon.strip()

    def validate(self, now: datetime.datetime) -> None:
        name = self.name if isinstance(self.name, str) else ''
        _require(bool(name), status.ValidationKind.InvalidName, 'Category name must not be empty.')
        _require(
            len(name) <= MAX_CATEGORY_NAME_LENGTH,
            status.ValidationKind.InvalidName,
            f'Category name must be at most {MAX_CATEGORY_NAME_LENGTH} characters.'
        )
        _require(
            self.type in CATEGORY_TYPES,
            status.ValidationKind.InvalidType,
            f'Category type must be one of {CATEGORY_TYPES}, got "{self.type}".'
        )
        _require(
            is_valid_hex_color(self.color),
            status.ValidationKind.InvalidColor,
            f'Category color must be a #RRGGBB hex color, got "{self.color}".'
        )
        icon = self.icon if isinstance(self.icon, str) else ''
        _require(
            bool(icon) and len(icon) <= MAX_ICON_LENGTH,
            status.ValidationKind.InvalidIcon,
            f'Category icon must be a non-empty name of at most {MAX_ICON_LENGTH} characters.'
        )
        _require(self.user_id is not None, status.ValidationKind.MissingUser, 'Category requires a user.')

    def references(self) -> Dict[str, EntityType]:
        return {'user_id': EntityType.User}


@dataclass
class Transaction(Entity):
    user_id: Optional[str] = None
    category_id: Optional[str] = None
    amount: decimal.Decimal = decimal.Decimal('0')
    type: str = 'expense'
    date: Optional[datetime.datetime] = None
    notes: Optional[str] = None
    receipt_image: Optional[bytes] = None

    entity_type: ClassVar[EntityType] = EntityType.Transaction
    table: ClassVar[str] = 'transactions'
    FIELDS: ClassVar[Dict[str, str]] = {
        'user_id': 'text',
        'category_id': 'text',
        'amount': 'decimal',
        'type': 'text',
        'date': 'datetime',
        'notes': 'text',
        'receipt_image': 'blob',
    }

    def normalize(self) -> None:
        self.amount = to_decimal(self.amount)
        if self.date is not None:
            self.date = to_datetime(self.date, 'Transaction date')

    def validate(self, now: datetime.datetime) -> None:
        _require(
            decimal.Decimal('0') < self.amount <= MAX_TRANSACTION_AMOUNT,
            status.ValidationKind.InvalidAmount,
            f'Transaction amount must be greater than 0 and at most {MAX_TRANSACTION_AMOUNT}, got {self.amount}.'
        )
        _require(
            self.type in TRANSACTION_TYPES,
            status.ValidationKind.InvalidType,
            f'Transaction type must be one of {TRANSACTION_TYPES}, got "{self.type}".'
        )
        _require(self.date is not None, status.ValidationKind.InvalidDate, 'Transaction date is required.')
        _require(
            self.date <= now,
            status.ValidationKind.InvalidDate,
            f'Transaction date {self.date.isoformat()} is in the future.'
        )
        _require(
            self.notes is None or len(self.notes) <= MAX_NOTES_LENGTH,
            status.ValidationKind.InvalidNotes,
            f'Transaction notes must be at most {MAX_NOTES_LENGTH} characters.'
        )
        _require(self.category_id is not None, status.ValidationKind.MissingCategory,
                 'Transaction requires a category.')
        _require(self.user_id is not None, status.ValidationKind.MissingUser, 'Transaction requires a user.')

    def references(self) -> Dict[str, EntityType]:
        return {'user_id': EntityType.User, 'category_id': EntityType.Category}


@dataclass
class Budget(Entity):
    user_id: Optional[str] = None
    category_id: Optional[str] = None
    name: str = ''
    amount: decimal.Decimal = decimal.Decimal('0')
    period: str = 'monthly'
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    is_active: bool = True

    entity_type: ClassVar[EntityType] = EntityType.Budget
    table: ClassVar[str] = 'budgets'
    FIELDS: ClassVar[Dict[str, str]] = {
        'user_id': 'text',
        'category_id': 'text',
        'name': 'text',
        'amount': 'decimal',
        'period': 'text',
        'start_date': 'datetime',
        'end_date': 'datetime',
        'is_active': 'bool',
    }

    def normalize(self) -> None:
        self.amount = to_decimal(self.amount)
        if isinstance(self.name, str):
            self.name = self.name.strip()
        if self.start_date is not None:
            self.start_date = to_datetime(self.start_date, 'Budget start date')
        # end_date is always derived, whatever the caller set
        if self.start_date is not None and self.period in BUDGET_PERIODS:
            self.end_date = compute_end_date(self.start_date, self.period)
        else:
            self.end_date = None

    def validate(self, now: datetime.datetime) -> None:
        name = self.name if isinstance(self.name, str) else ''
        _require(
            bool(name) and len(name) <= MAX_BUDGET_NAME_LENGTH,
            status.ValidationKind.InvalidName,
            f'Budget name must be a non-empty name of at most {MAX_BUDGET_NAME_LENGTH} characters.'
        )
        _require(
            decimal.Decimal('0') < self.amount <= MAX_BUDGET_AMOUNT,
            status.ValidationKind.InvalidAmount,
            f'Budget amount must be greater than 0 and at most {MAX_BUDGET_AMOUNT}, got {self.amount}.'
        )
        _require(
            self.period in BUDGET_PERIODS,
            status.ValidationKind.InvalidPeriod,
            f'Budget period must be one of {BUDGET_PERIODS}, got "{self.period}".'
        )
        _require(self.start_date is not None, status.ValidationKind.InvalidDate, 'Budget start date is required.')
        _require(
            self.end_date is not None and self.end_date > self.start_date,
            status.ValidationKind.InvalidDate,
            'Budget end date must be after its start date.'
        )
        _require(self.category_id is not None, status.ValidationKind.MissingCategory, 'Budget requires a category.')
        _require(self.user_id is not None, status.ValidationKind.MissingUser, 'Budget requires a user.')

    def references(self) -> Dict[str, EntityType]:
        return {'user_id': EntityType.User, 'category_id': EntityType.Category}


ENTITY_CLASSES: Dict[EntityType, Type[Entity]] = {
    EntityType.User: User,
    EntityType.Category: Category,
    EntityType.Transaction: Transaction,
    EntityType.Budget: Budget,
}


def entity_class(entity_type: EntityType) -> Type[Entity]:
    """Return the entity class registered for entity_type."""
    return ENTITY_CLASSES[EntityType(entity_type)]
