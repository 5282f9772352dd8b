"""
Application Commands

Command handlers for use cases that span several runs.
"""

from .grade_submission import GradeSubmissionCommand

__all__ = ["GradeSubmissionCommand"]
