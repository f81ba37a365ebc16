from __future__ import annotations

ROLE_USER = "user"
ROLE_AGENT = "agent"
ROLE_ADMIN = "admin"

ROLES = (ROLE_USER, ROLE_AGENT, ROLE_ADMIN)
STAFF_ROLES = frozenset({ROLE_AGENT, ROLE_ADMIN})

TICKET_STATUS_OPEN = "Open"
TICKET_STATUS_IN_PROGRESS = "In Progress"
TICKET_STATUS_RESOLVED = "Resolved"
TICKET_STATUS_CLOSED = "Closed"

TICKET_STATUSES = (
    TICKET_STATUS_OPEN,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_RESOLVED,
    TICKET_STATUS_CLOSED,
)

PRIORITY_LEVELS = ("Low", "Medium", "High", "Critical")
DEFAULT_PRIORITY = "Medium"

VOTE_UP = "up"
VOTE_DOWN = "down"
VOTE_TYPES = (VOTE_UP, VOTE_DOWN)

TICKET_NUMBER_COUNTER = "ticket_number"
TICKET_NUMBER_PREFIX = "TKT"
TICKET_NUMBER_WIDTH = 6

SUBJECT_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000
TAGS_MAX_COUNT = 10
TAG_MAX_LENGTH = 30
COMMENT_MAX_LENGTH = 1000

CATEGORY_NAME_MAX_LENGTH = 50
CATEGORY_DESCRIPTION_MAX_LENGTH = 200
DEFAULT_CATEGORY_COLOR = "#1976d2"

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30

MAX_ATTACHMENTS_PER_TICKET = 5
MAX_ATTACHMENTS_PER_COMMENT = 3
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
ALLOWED_ATTACHMENT_EXTENSIONS = (
    "jpeg",
    "jpg",
    "png",
    "gif",
    "pdf",
    "doc",
    "docx",
    "txt",
    "zip",
    "rar",
)

NOTIFY_CREATED = "created"
NOTIFY_ASSIGNED = "assigned"
NOTIFY_STATUS_CHANGED = "statusChanged"
NOTIFY_COMMENTED = "commented"

NOTIFICATION_KINDS = {
    NOTIFY_CREATED,
    NOTIFY_ASSIGNED,
    NOTIFY_STATUS_CHANGED,
    NOTIFY_COMMENTED,
}

OUTBOX_PENDING = "pending"
OUTBOX_SENT = "sent"
OUTBOX_FAILED = "failed"

TICKET_SORT_FIELDS = ("createdAt", "updatedAt", "priority", "status", "subject")
