"""Workflow runtime components.

- ``workflow``: state graphs, instances, predicates and definitions
- ``rbac``: organizational context and permission resolution
- ``engine``: the in-process orchestration engine
"""
