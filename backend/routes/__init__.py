"""
Circuit Hub - Routes Package

Modular API routers for the circuit engine.
"""

from .circuits import router as circuits_router, set_dependencies as set_circuits_deps
from .workflows import router as workflows_router, set_dependencies as set_workflows_deps
from .approvals import router as approvals_router, set_dependencies as set_approvals_deps
from .errors import install_error_handlers

__all__ = [
    'circuits_router', 'set_circuits_deps',
    'workflows_router', 'set_workflows_deps',
    'approvals_router', 'set_approvals_deps',
    'install_error_handlers',
]
