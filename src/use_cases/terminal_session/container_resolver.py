"""
Container Resolver

Finds the one running container a terminal session may attach to and
re-checks that it really belongs to the stack the client claimed.
"""

import asyncio
from typing import Optional
from tools.docker_tools import (
    DOCKER_ERRORS,
    STACK_LABEL,
    compose_label_filters,
    short_id,
)
from tools.logger import log_debug, log_warning
from use_cases.terminal_session.errors import (
    ContainerNotFoundError,
    ContainerResolutionError,
    NoRunningContainerError,
    StackMismatchError,
)


def _describe(stack_name: str, service_name: str, container_name: Optional[str]) -> str:
    return f"stack={stack_name}, service={service_name}, container={container_name or ''}"


def validate_container_stack(client, container_id: str, expected_stack: str) -> None:
    """
    Inspect a container and make sure its stack label matches.

    Raises:
        StackMismatchError: label missing or naming a different stack
        ContainerResolutionError: the container could not be inspected
    """
    try:
        container = client.containers.get(container_id)
    except DOCKER_ERRORS as e:
        raise ContainerResolutionError(
            "Failed to inspect container", f"{short_id(container_id)}: {e}"
        )

    labels = container.labels or {}
    actual_stack = labels.get(STACK_LABEL)

    if actual_stack is None:
        raise StackMismatchError(
            "Stack mismatch",
            f"container {short_id(container_id)} has no Docker Compose project label",
        )

    if actual_stack != expected_stack:
        log_warning(
            f"Container {short_id(container_id)} belongs to stack '{actual_stack}' "
            f"but was requested for stack '{expected_stack}'"
        )
        raise StackMismatchError(
            "Stack mismatch",
            f"container belongs to '{actual_stack}' but claimed stack is '{expected_stack}'",
        )


def find_container_id(
    client,
    stack_name: str,
    service_name: str,
    container_name: Optional[str] = None,
) -> str:
    """
    Resolve (stack, service, optional name) to a running container id.

    Args:
        client: docker.DockerClient
        stack_name: Compose project the container must belong to
        service_name: Compose service within that project
        container_name: Optional name filter when a service has replicas

    Returns:
        The full id of the first running match

    Raises:
        ContainerNotFoundError: nothing matched the filters
        NoRunningContainerError: matches exist but none is running
        StackMismatchError: the selected container failed re-validation
    """
    filters = {"label": compose_label_filters(stack_name, service_name)}
    if container_name:
        filters["name"] = container_name

    try:
        containers = client.containers.list(all=True, filters=filters)
    except DOCKER_ERRORS as e:
        raise ContainerResolutionError("Failed to list containers", str(e))

    description = _describe(stack_name, service_name, container_name)

    if not containers:
        raise ContainerNotFoundError("No containers found", description)

    for container in containers:
        if container.status == "running":
            log_debug(
                f"Selected container {short_id(container.id)} for {description}"
            )
            validate_container_stack(client, container.id, stack_name)
            return container.id

    raise NoRunningContainerError("No running containers found", description)


async def resolve_container(
    client,
    stack_name: str,
    service_name: str,
    container_name: Optional[str] = None,
    executor=None,
) -> str:
    """Async wrapper that keeps the Docker calls off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        executor,
        find_container_id,
        client,
        stack_name,
        service_name,
        container_name,
    )
