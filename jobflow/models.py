"""Status vocabularies shared by the server store and the client session.

Job lifecycle: posted -> assigned -> in-progress -> submitted
-> (revision-requested -> submitted)* -> completed
"""
from __future__ import annotations


class JobStatus:
    POSTED = "posted"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    SUBMITTED = "submitted"
    REVISION_REQUESTED = "revision-requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = frozenset({POSTED, ASSIGNED, IN_PROGRESS, SUBMITTED, REVISION_REQUESTED, COMPLETED, CANCELLED})


class JobAction:
    ASSIGN = "assign"
    START = "start"
    SUBMIT = "submit"
    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"

    ALL = frozenset({ASSIGN, START, SUBMIT, APPROVE, REQUEST_REVISION})


class Role:
    WORKER = "worker"
    COMPANY = "company"
    ADMIN = "admin"

    ALL = frozenset({WORKER, COMPANY, ADMIN})


class SubmissionStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApplicationStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class NotificationType:
    APPLICATION = "application"
    JOB = "job"
    SUBMISSION = "submission"
    REVIEW = "review"
    MESSAGE = "message"
    SYSTEM = "system"

    ALL = frozenset({APPLICATION, JOB, SUBMISSION, REVIEW, MESSAGE, SYSTEM})


class NotificationAction:
    """Values of ``metadata.action`` on notifications."""

    ASSIGNED = "assigned"
    STARTED = "started"
    SUBMITTED = "submitted"
    RESUBMITTED = "resubmitted"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    APPLICATION_REJECTED = "application_rejected"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"
