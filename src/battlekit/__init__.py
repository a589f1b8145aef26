"""battlekit - recovery and checkpoint tooling for coding-agent battles.

A battle runs an external coding agent through repeated iterations at a
task. battlekit classifies failures, plans how to resume, snapshots and
restores the working directory, and gates the start of a battle behind
preflight checks.
"""

__version__ = "0.1.0"
