"""Unit tests for container resolution and stack-label validation."""

import docker
import pytest

from tests.fakes import FakeContainer, FakeDockerClient, compose_container
from tools.docker_tools import SERVICE_LABEL, STACK_LABEL
from use_cases.terminal_session import (
    find_container_id,
    resolve_container,
    validate_container_stack,
)
from use_cases.terminal_session.errors import (
    ContainerNotFoundError,
    ContainerResolutionError,
    NoRunningContainerError,
    StackMismatchError,
)


@pytest.fixture
def client():
    return FakeDockerClient()


class TestFindContainer:
    """Test selection of the container a terminal attaches to."""

    def test_resolves_running_container_for_stack_and_service(self, client):
        """A container labeled demo/web resolves for stack demo, service web."""
        client.containers.items.append(compose_container("abc123", "demo", "web"))
        assert find_container_id(client, "demo", "web") == "abc123"

    def test_no_match_raises_not_found(self, client):
        client.containers.items.append(compose_container("abc123", "demo", "web"))
        with pytest.raises(ContainerNotFoundError) as exc_info:
            find_container_id(client, "demo", "db")
        assert "service=db" in exc_info.value.context

    def test_matches_without_running_container(self, client):
        client.containers.items.append(
            compose_container("abc123", "demo", "web", status="exited")
        )
        with pytest.raises(NoRunningContainerError):
            find_container_id(client, "demo", "web")

    def test_selects_first_running_container(self, client):
        client.containers.items.extend(
            [
                compose_container("old", "demo", "web", status="exited", name="demo-web-1"),
                compose_container("new", "demo", "web", name="demo-web-2"),
            ]
        )
        assert find_container_id(client, "demo", "web") == "new"

    def test_container_name_hint_filters(self, client):
        client.containers.items.extend(
            [
                compose_container("one", "demo", "web", name="demo-web-1"),
                compose_container("two", "demo", "web", name="demo-web-2"),
            ]
        )
        assert find_container_id(client, "demo", "web", "demo-web-2") == "two"

    def test_other_stack_is_never_returned(self, client):
        """Requesting the demo container under another stack never yields it."""
        client.containers.items.append(compose_container("abc123", "demo", "web"))
        client.containers.ignore_filters = True

        with pytest.raises(StackMismatchError):
            find_container_id(client, "other", "web")

    def test_label_changed_after_listing_is_rejected(self, client):
        container = compose_container("abc123", "demo", "web")
        container.inspect_labels = {STACK_LABEL: "intruder", SERVICE_LABEL: "web"}
        client.containers.items.append(container)

        with pytest.raises(StackMismatchError) as exc_info:
            find_container_id(client, "demo", "web")
        assert "intruder" in exc_info.value.context

    def test_list_failure_is_wrapped(self, client):
        client.containers.list_error = docker.errors.APIError("daemon unavailable")
        with pytest.raises(ContainerResolutionError) as exc_info:
            find_container_id(client, "demo", "web")
        assert exc_info.value.message == "Failed to list containers"


class TestValidateContainerStack:
    """Test the stack-ownership re-validation."""

    def test_matching_label_passes(self, client):
        client.containers.items.append(compose_container("abc123", "demo", "web"))
        validate_container_stack(client, "abc123", "demo")

    def test_mismatched_label_raises(self, client):
        client.containers.items.append(compose_container("abc123", "demo", "web"))
        with pytest.raises(StackMismatchError) as exc_info:
            validate_container_stack(client, "abc123", "other")
        assert "'demo'" in exc_info.value.context
        assert "'other'" in exc_info.value.context

    def test_missing_label_raises(self, client):
        client.containers.items.append(FakeContainer("abc123", "plain", labels={}))
        with pytest.raises(StackMismatchError):
            validate_container_stack(client, "abc123", "demo")

    def test_inspect_failure_is_wrapped(self, client):
        with pytest.raises(ContainerResolutionError):
            validate_container_stack(client, "missing", "demo")


class TestResolveContainerAsync:

    @pytest.mark.asyncio
    async def test_runs_lookup_off_the_loop(self, client):
        client.containers.items.append(compose_container("abc123", "demo", "web"))
        assert await resolve_container(client, "demo", "web") == "abc123"

    @pytest.mark.asyncio
    async def test_propagates_resolution_errors(self, client):
        with pytest.raises(ContainerNotFoundError):
            await resolve_container(client, "demo", "web")
