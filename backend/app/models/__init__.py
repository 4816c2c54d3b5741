from app.models.category import Category
from app.models.subject import Subject
from app.models.criterion import Criterion
from app.models.task import Task
from app.models.child import Child
from app.models.review import Review
from app.models.achievement import Achievement, ChildAchievement
from app.models.progress import SubjectProgress

__all__ = [
    "Category",
    "Subject",
    "Criterion",
    "Task",
    "Child",
    "Review",
    "Achievement",
    "ChildAchievement",
    "SubjectProgress",
]
