"""
Request dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobqueue.bootstrap import QueueRuntime
from jobqueue.core.lifecycle import LifecycleManager


def get_runtime(request: Request) -> QueueRuntime:
    """Get the queue runtime opened by the application lifespan."""
    return request.app.state.runtime


def get_lifecycle(request: Request) -> LifecycleManager:
    """Get the lifecycle manager for the current request."""
    return get_runtime(request).lifecycle


Runtime = Annotated[QueueRuntime, Depends(get_runtime)]
Lifecycle = Annotated[LifecycleManager, Depends(get_lifecycle)]
