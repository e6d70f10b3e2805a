"""
Supervised execution of authorized commands.
"""

from .executor import ExecutionResult, SupervisedExecutor, escape_command, kill_process_tree

__all__ = ["ExecutionResult", "SupervisedExecutor", "escape_command", "kill_process_tree"]
