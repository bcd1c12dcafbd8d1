"""
Unit Tests: Docker Runtime Adapter
==================================
Docker client mocked with MagicMock, so tests run without a daemon.

Tests:
  1. create passes labels, workspace volume, memory bytes and nano cpus
  2. stop tolerates missing containers and "not modified" (already stopped)
  3. remove / remove_volume tolerate NotFound; other SDK errors become ContainerRuntimeError
  4. exec decodes demuxed output
  5. list filters on the id label
  6. update_resources maps memory + cpu to docker update kwargs
"""

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from devbox_commander import config
from devbox_commander.errors import ContainerRuntimeError, NotFoundError
from devbox_commander.runtime import ContainerSpec, DockerRuntime


def _api_error(status: int, explanation: str = "error") -> APIError:
    response = MagicMock()
    response.status_code = status
    return APIError("request failed", response=response, explanation=explanation)


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def adapter(client):
    return DockerRuntime(client=client)


@pytest.mark.asyncio
async def test_create_options(adapter, client):
    client.containers.create.return_value = MagicMock(id="abc123def456")
    spec = ContainerSpec(
        name="devbox-demo-1", image="devbox-claude:latest",
        labels={config.LABEL_ID: "c1"}, volume_name="devbox-demo-workspace",
        memory_mb=2048, cpu_cores=1.5, disk_mb=10240,
    )

    runtime_id = await adapter.create(spec)

    assert runtime_id == "abc123def456"
    kwargs = client.containers.create.call_args.kwargs
    assert kwargs["name"] == "devbox-demo-1"
    assert kwargs["labels"] == {config.LABEL_ID: "c1"}
    assert kwargs["volumes"] == {"devbox-demo-workspace": {"bind": "/workspace", "mode": "rw"}}
    assert kwargs["mem_limit"] == 2048 * 1024 * 1024
    assert kwargs["nano_cpus"] == 1_500_000_000
    assert kwargs["restart_policy"] == {"Name": "unless-stopped"}


@pytest.mark.asyncio
async def test_create_error_is_translated(adapter, client):
    client.containers.create.side_effect = _api_error(500, "no such image")
    spec = ContainerSpec(name="x", image="missing", volume_name="v", memory_mb=512, cpu_cores=1)
    with pytest.raises(ContainerRuntimeError):
        await adapter.create(spec)


@pytest.mark.asyncio
async def test_stop_tolerates_missing_and_already_stopped(adapter, client):
    client.containers.get.side_effect = NotFound("gone")
    await adapter.stop("abc")

    container = MagicMock()
    container.stop.side_effect = _api_error(304, "Not Modified")
    client.containers.get.side_effect = None
    client.containers.get.return_value = container
    await adapter.stop("abc")

    container.stop.side_effect = _api_error(409, "Container abc is not running")
    await adapter.stop("abc")

    container.stop.side_effect = _api_error(500, "daemon broke")
    with pytest.raises(ContainerRuntimeError):
        await adapter.stop("abc")


@pytest.mark.asyncio
async def test_remove_tolerates_not_found(adapter, client):
    client.containers.get.side_effect = NotFound("gone")
    await adapter.remove("abc", force=True)

    client.volumes.get.side_effect = NotFound("gone")
    await adapter.remove_volume("devbox-demo-workspace")

    client.containers.get.side_effect = None
    client.containers.get.return_value.remove.side_effect = _api_error(500, "busy")
    with pytest.raises(ContainerRuntimeError):
        await adapter.remove("abc")


@pytest.mark.asyncio
async def test_start_missing_container(adapter, client):
    client.containers.get.side_effect = NotFound("gone")
    with pytest.raises(NotFoundError):
        await adapter.start("abc")


@pytest.mark.asyncio
async def test_exec_decodes_output(adapter, client):
    container = client.containers.get.return_value
    container.exec_run.return_value = MagicMock(exit_code=2, output=(b"out\n", b"err\n"))

    result = await adapter.exec("abc", ["git", "status"], user="developer", workdir="/workspace")

    assert result.exit_code == 2
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    container.exec_run.assert_called_once_with(
        ["git", "status"], demux=True, user="developer", workdir="/workspace"
    )


@pytest.mark.asyncio
async def test_list_filters_managed(adapter, client):
    c = MagicMock(id="abc", status="running", labels={config.LABEL_ID: "c1"})
    c.name = "devbox-demo-1"
    client.containers.list.return_value = [c]

    listed = await adapter.list()

    client.containers.list.assert_called_once_with(all=True, filters={"label": config.LABEL_ID})
    assert listed[0].id == "abc"
    assert listed[0].state == "running"
    assert listed[0].name == "devbox-demo-1"


@pytest.mark.asyncio
async def test_update_resources(adapter, client):
    container = client.containers.get.return_value
    await adapter.update_resources("abc", memory_bytes=1024, nano_cpus=2_000_000_000)
    container.update.assert_called_once_with(
        mem_limit=1024, memswap_limit=1024, cpu_period=100000, cpu_quota=200000,
    )

    container.update.reset_mock()
    await adapter.update_resources("abc")
    container.update.assert_not_called()


@pytest.mark.asyncio
async def test_logs_decoded(adapter, client):
    client.containers.get.return_value.logs.return_value = b"hello\n"
    assert await adapter.logs("abc", tail=5) == "hello\n"
