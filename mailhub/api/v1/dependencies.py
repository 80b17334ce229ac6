"""Presentation-layer dependency injection.

The Container is built once in the lifespan and stored on app.state; routes
depend on it (or on services pulled from it) and never construct
infrastructure themselves.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from mailhub.application.services.change_dispatcher import ChangeEventDispatcher
from mailhub.application.services.subscription_manager import SubscriptionManager
from mailhub.core.container import Container


def get_container(request: Request) -> Container:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return container


def get_dispatcher(container: Annotated[Container, Depends(get_container)]) -> ChangeEventDispatcher:
    return container.dispatcher


def get_subscription_manager(
    container: Annotated[Container, Depends(get_container)],
) -> SubscriptionManager:
    return container.subscription_manager


ContainerDep = Annotated[Container, Depends(get_container)]
DispatcherDep = Annotated[ChangeEventDispatcher, Depends(get_dispatcher)]
SubscriptionManagerDep = Annotated[SubscriptionManager, Depends(get_subscription_manager)]
