"""
Persistence for task records, chapters and projects.
"""

from .models import Base, Project, Chapter, AgentTask
from .repository import TaskRepository

__all__ = ["Base", "Project", "Chapter", "AgentTask", "TaskRepository"]
