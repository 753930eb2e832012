from jobflow.repositories.applications import InMemoryApplicationsRepository
from jobflow.repositories.conversations import InMemoryConversationsRepository
from jobflow.repositories.jobs import InMemoryJobsRepository
from jobflow.repositories.notifications import InMemoryNotificationsRepository
from jobflow.repositories.submissions import InMemorySubmissionsRepository

__all__ = [
    "InMemoryApplicationsRepository",
    "InMemoryConversationsRepository",
    "InMemoryJobsRepository",
    "InMemoryNotificationsRepository",
    "InMemorySubmissionsRepository",
]
