"""Database table name constants and type references."""

# Table names: single source of truth for Supabase queries
INVOICE_ATTACHMENTS = "invoice_attachments"
ANIMAL_EVENT_ATTACHMENTS = "animal_event_attachments"
USER_ROLES = "user_roles"
XERO_TOKEN_ROTATIONS = "xero_token_rotations"

# Owner type (as used in URLs) -> (attachment table, owner foreign key column)
OWNER_INVOICE = "invoice"
OWNER_ANIMAL_EVENT = "animal_event"
ATTACHMENT_TABLES = {
    OWNER_INVOICE: (INVOICE_ATTACHMENTS, "invoice_id"),
    OWNER_ANIMAL_EVENT: (ANIMAL_EVENT_ATTACHMENTS, "event_id"),
}

# Role constants
ROLE_ADMIN = "admin"
