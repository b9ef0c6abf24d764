"""Role-based access control over organizational structure.

A user's positions (designation within a department or team) are mapped onto
abstract workflow roles; permissions declared on state graphs are checked
against those roles, the positions themselves and the workflow context.
"""

__all__: list[str] = []
