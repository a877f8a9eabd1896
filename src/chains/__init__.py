from .cache import TreeCache
from .progress import (
    get_group_progress, get_group_unit_progress, get_next_unit_in_group,
    increment_group_completion_count, is_group_fully_completed,
    reset_group_completion_count, reset_group_task_progress,
)
from .tree import TreeBuildReport, build_tree, build_tree_with_report, find_node

__all__ = [
    "TreeCache", "get_group_progress", "get_group_unit_progress",
    "get_next_unit_in_group", "increment_group_completion_count",
    "is_group_fully_completed", "reset_group_completion_count",
    "reset_group_task_progress", "TreeBuildReport", "build_tree",
    "build_tree_with_report", "find_node",
]
