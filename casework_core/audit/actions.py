"""
Audit Actions & Resources
=========================
The closed set of audited actions and the well-known resource kinds.
"""

from enum import Enum


class AuditAction(str, Enum):
    """Actions recorded in the audit chain."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    VIEW = "VIEW"
    EXPORT = "EXPORT"
    PUBLISH = "PUBLISH"
    UPLOAD = "UPLOAD"
    DOWNLOAD = "DOWNLOAD"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    SUBMIT = "SUBMIT"
    EXTRACT = "EXTRACT"

    # Security decisions (risk results, lockouts, admin unlocks)
    SECURITY = "SECURITY"


class AuditResource(str, Enum):
    """Well-known resource kinds. Any non-empty string is accepted."""
    FORM = "FORM"
    SUBMISSION = "SUBMISSION"
    FILE = "FILE"
    USER = "USER"
    CLIENT = "CLIENT"
    CALL = "CALL"
    NOTE = "NOTE"
    REPORT = "REPORT"
    PROGRAM = "PROGRAM"
    GRANT = "GRANT"
    EXPORT = "EXPORT"
    IN_PERSON_RECORDING = "IN_PERSON_RECORDING"
    ORGANIZATION = "ORGANIZATION"
    SECURITY = "SECURITY"
