from .user import User  # noqa: F401
from .job import Job  # noqa: F401
from .application import Application  # noqa: F401
from .job_event import JobEvent  # noqa: F401

from .transaction import Transaction  # noqa: F401
from .payment_log import PaymentLog  # noqa: F401
from .webhook_event import WebhookEvent  # noqa: F401
from .idempotency_key import IdempotencyKey  # noqa: F401

from .audit_log import AuditLog  # noqa: F401
from .notification import Notification  # noqa: F401

# Trust & safety
from .review import Review  # noqa: F401
from .report import Report  # noqa: F401
from .blacklist import BlacklistEntry  # noqa: F401
