"""Container runtime backed by the Docker engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import docker
from docker.errors import NotFound

from dockyard.core.contracts import ContainerInstance, InstanceSpec
from dockyard.core.swap_controller import PROJECT_LABEL

logger = logging.getLogger(__name__)


class DockerRuntime:
    """Run project instances as Docker containers.

    The docker SDK is blocking, so every call runs in a worker thread.
    Containers publish the project port on the same host port, which is where
    the reverse proxy and the health probe reach them.
    """

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._docker = client

    @property
    def _client(self) -> docker.DockerClient:
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    async def list_instances(self, project_id: str) -> list[ContainerInstance]:
        containers = await asyncio.to_thread(
            self._client.containers.list,
            all=True,
            filters={"label": f"{PROJECT_LABEL}={project_id}"},
        )
        return [self._instance(container) for container in containers]

    async def start(self, spec: InstanceSpec) -> ContainerInstance:
        container = await asyncio.to_thread(
            self._client.containers.run,
            spec.artifact,
            name=spec.name,
            detach=True,
            environment=spec.env,
            labels=spec.labels,
            ports={f"{spec.port}/tcp": spec.port},
            restart_policy={"Name": "unless-stopped"},
        )
        await asyncio.to_thread(container.reload)
        logger.info(f"Started container {container.short_id} as {spec.name} from {spec.artifact}")
        return self._instance(container)

    async def stop(self, instance_id: str) -> None:
        container = await self._get(instance_id)
        await asyncio.to_thread(container.stop, timeout=10)

    async def remove(self, instance_id: str) -> None:
        try:
            container = await self._get(instance_id)
        except NotFound:
            return
        await asyncio.to_thread(container.remove, force=True)

    async def rename(self, instance_id: str, new_name: str) -> None:
        container = await self._get(instance_id)
        await asyncio.to_thread(container.rename, new_name)
        logger.info(f"Renamed container {container.short_id} to {new_name}")

    async def ensure_running(self, instance_id: str) -> ContainerInstance:
        container = await self._get(instance_id)
        if container.status != "running":
            await asyncio.to_thread(container.start)
            await asyncio.to_thread(container.reload)
        return self._instance(container)

    async def logs(self, instance_id: str, *, tail: int = 100) -> list[str]:
        container = await self._get(instance_id)
        raw = await asyncio.to_thread(container.logs, tail=tail, timestamps=True)
        return raw.decode("utf-8", errors="replace").splitlines()

    async def stats(self, instance_id: str) -> dict[str, Any]:
        container = await self._get(instance_id)
        stats = await asyncio.to_thread(container.stats, stream=False)

        cpu_percent = 0.0
        cpu_delta = (
            stats["cpu_stats"]["cpu_usage"]["total_usage"]
            - stats["precpu_stats"]["cpu_usage"]["total_usage"]
        )
        system_delta = stats["cpu_stats"].get("system_cpu_usage", 0) - stats[
            "precpu_stats"
        ].get("system_cpu_usage", 0)
        if system_delta > 0:
            num_cpus = stats["cpu_stats"].get("online_cpus") or len(
                stats["cpu_stats"]["cpu_usage"].get("percpu_usage", [1])
            )
            cpu_percent = round((cpu_delta / system_delta) * num_cpus * 100.0, 2)

        memory = stats.get("memory_stats", {})
        rx_bytes = 0
        tx_bytes = 0
        for net in stats.get("networks", {}).values():
            rx_bytes += net.get("rx_bytes", 0)
            tx_bytes += net.get("tx_bytes", 0)
        return {
            "cpu_percent": cpu_percent,
            "memory_used_bytes": memory.get("usage", 0),
            "memory_limit_bytes": memory.get("limit", 0),
            "network_rx_bytes": rx_bytes,
            "network_tx_bytes": tx_bytes,
        }

    async def _get(self, instance_id: str) -> Any:
        return await asyncio.to_thread(self._client.containers.get, instance_id)

    @staticmethod
    def _instance(container: Any) -> ContainerInstance:
        host_port: int | None = None
        for bindings in (container.ports or {}).values():
            if bindings:
                host_port = int(bindings[0]["HostPort"])
                break
        return ContainerInstance(
            id=container.id,
            name=container.name,
            running=container.status == "running",
            image=container.attrs.get("Config", {}).get("Image"),
            host_port=host_port,
        )
