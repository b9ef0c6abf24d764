"""Workflow domain concepts.

This package holds:
- The error taxonomy shared by every layer
- Guard and validation predicates
- State graphs and the instances that walk them
- Engine events
- The bundled workflow definitions

Graphs are declarative and inspectable; every mutation of an instance goes
through one transition algorithm.
"""

__all__: list[str] = []
