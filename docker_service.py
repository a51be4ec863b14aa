import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import docker
from docker.errors import APIError, ImageNotFound, NotFound

from config_service import Settings, get_settings

logger = logging.getLogger(__name__)

SERVER_LABEL = "com.glide.mc.server"
GAME_PORT = "25565/tcp"

SERVER_IMAGES: Dict[str, str] = {
    "VANILLA": "itzg/minecraft-server:java17",
    "PAPER": "itzg/minecraft-server:java17",
    "FORGE": "itzg/minecraft-server:java17-forge",
    "FABRIC": "fabricmc/fabric-loader:latest",
    "AUTO_CURSEFORGE": "itzg/minecraft-server",
    "FTBA": "itzg/minecraft-server:java8-multiarch",
}

_client: Optional[docker.DockerClient] = None
_client_settings: Optional[Settings] = None
_client_lock = threading.Lock()


def docker_base_url(socket_path: str) -> str:
    """unix sockets, tcp/http(s) URLs and bare host:port are all accepted."""
    if re.search(r"docker\.sock", socket_path):
        return socket_path if socket_path.startswith("unix://") else f"unix://{socket_path}"
    if socket_path.startswith(("tcp://", "http://", "https://", "ssh://")):
        return socket_path
    host = socket_path
    if ":" not in host:
        host = f"{host}:2375"
    return f"tcp://{host}"


def configure(settings: Settings) -> None:
    """Bind the shared client to `settings`. A changed socket path reconnects on next use."""
    global _client, _client_settings
    with _client_lock:
        previous = _client_settings
        _client_settings = settings
        if previous is not None and previous.docker_socket_path == settings.docker_socket_path:
            return
        if _client is not None:
            _client.close()
        _client = None


def get_client() -> docker.DockerClient:
    """Shared Docker client. Mount /var/run/docker.sock when running in a container."""
    global _client
    if _client is not None:
        return _client
    with _client_lock:
        if _client is None:
            base_url = docker_base_url((_client_settings or get_settings()).docker_socket_path)
            try:
                _client = docker.DockerClient(base_url=base_url)
            except Exception as e:
                raise RuntimeError(f"Failed to connect to Docker daemon: {e}")
    return _client


def _env_map(env: Optional[List[str]]) -> Dict[str, str]:
    out = {}
    for item in env or []:
        key, _, value = item.partition("=")
        if key:
            out[key] = value
    return out


def _strip_name(name: Optional[str]) -> str:
    return (name or "").lstrip("/") or "unknown"


def extract_server_data(info: Dict[str, Any]) -> Dict[str, Any]:
    env = _env_map((info.get("Config") or {}).get("Env"))
    bindings = (info.get("HostConfig") or {}).get("PortBindings") or {}
    host_port = ((bindings.get(GAME_PORT) or [{}])[0] or {}).get("HostPort") or ""
    state = info.get("State") or {}
    return {
        "containerName": _strip_name(info.get("Name")),
        "version": env.get("VERSION") or "unknown",
        "type": (env.get("TYPE") or "VANILLA").upper(),
        "port": int(host_port) if host_port.isdigit() else 25565,
        "memory": env.get("MEMORY") or "2G",
        "modpackId": env.get("MODPACK_ID") or env.get("FTB_MODPACK_ID") or env.get("CF_PAGE_URL"),
        "status": state.get("Status") or "unknown",
        "startedAt": state.get("StartedAt"),
        "finishedAt": state.get("FinishedAt"),
        "error": state.get("Error"),
    }


def list_servers() -> List[Dict[str, Any]]:
    client = get_client()
    out = []
    for summary in client.api.containers(all=True, filters={"label": [SERVER_LABEL]}):
        info = client.api.inspect_container(summary["Id"])
        names = summary.get("Names") or []
        created = summary.get("Created")
        entry = {
            "id": summary["Id"],
            "name": _strip_name(names[0] if names else None),
            "state": summary.get("State"),
            "created": datetime.fromtimestamp(created, tz=timezone.utc).isoformat() if created else None,
            "image": summary.get("Image"),
            "ports": summary.get("Ports") or [],
            "labels": summary.get("Labels") or {},
        }
        entry.update(extract_server_data(info))
        out.append(entry)
    return out


def container_name_for(name: str) -> str:
    return "mc-" + re.sub(r"[^a-z0-9]", "-", name.lower())


def server_env(config: Dict[str, Any], settings: Settings) -> List[str]:
    server_type = config["type"]
    env = [
        "EULA=TRUE",
        "CREATE_CONSOLE_IN_PIPE=true",
        f"TYPE={server_type.lower()}",
        f"VERSION={config['version']}",
        f"MEMORY={config['memory']}",
    ]
    modpack = config.get("modpackId")
    if server_type == "AUTO_CURSEFORGE":
        if settings.curseforge_api_key:
            env.append(f"CF_API_KEY={settings.curseforge_api_key}")
        if modpack:
            env.append(f"CF_PAGE_URL={modpack}")
    elif server_type == "FTBA" and modpack is not None:
        env.append(f"FTB_MODPACK_ID={int(modpack)}")
    return env


def pull_image(image: str) -> bool:
    # a failed pull is not fatal; creation proceeds with whatever is cached locally
    client = get_client()
    repo, _, tag = image.partition(":")
    try:
        client.images.pull(repo, tag=tag or "latest")
        return True
    except (APIError, ImageNotFound) as e:
        logger.error("Error pulling image %s: %s", image, e)
        return False


def create_server(config: Dict[str, Any], settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or _client_settings or get_settings()
    client = get_client()
    server_id = f"mc-{int(time.time() * 1000)}"
    server_path = os.path.join(settings.server_data_path, server_id)
    os.makedirs(server_path, exist_ok=True)

    image = SERVER_IMAGES.get(config["type"], SERVER_IMAGES["VANILLA"])
    pull_image(image)

    container = client.containers.create(
        image,
        name=container_name_for(config["name"]),
        labels={SERVER_LABEL: "true"},
        environment=server_env(config, settings),
        ports={GAME_PORT: int(config["port"])},
        nano_cpus=int(settings.default_cpu_count * 1_000_000_000),
        volumes={server_path: {"bind": settings.sandbox_prefix.rstrip("/") or "/", "mode": "rw"}},
    )
    return {
        "id": container.id,
        "name": config["name"],
        "status": "CREATED",
        "config": {
            "name": config["name"],
            "type": config["type"],
            "port": config["port"],
            "memory": config["memory"],
            "modpackId": config.get("modpackId"),
        },
    }


def get_container(id_or_name: str):
    return get_client().containers.get(id_or_name)


def start_server(id_or_name: str) -> Dict[str, Any]:
    get_container(id_or_name).start()
    return {"status": "STARTED"}


def stop_server(id_or_name: str) -> Dict[str, Any]:
    get_container(id_or_name).stop()
    return {"status": "STOPPED"}


def restart_server(id_or_name: str) -> Dict[str, Any]:
    get_container(id_or_name).restart()
    return {"status": "RESTARTED"}


def remove_server(id_or_name: str) -> Dict[str, Any]:
    get_container(id_or_name).remove()
    return {"status": "REMOVED"}


def get_server_status(id_or_name: str) -> Union[Dict[str, Any], None]:
    """Inspect plus a one-shot stats sample; None when the engine reports 404."""
    client = get_client()
    try:
        info = client.api.inspect_container(id_or_name)
        stats = client.api.stats(id_or_name, stream=False, one_shot=True)
    except NotFound:
        return None
    state = info.get("State") or {}
    network = info.get("NetworkSettings") or {}
    return {
        "id": info.get("Id"),
        "name": _strip_name(info.get("Name")),
        "status": (state.get("Status") or "unknown").upper(),
        "running": bool(state.get("Running")),
        "createdAt": info.get("Created"),
        "ipAddress": network.get("IPAddress"),
        "ports": network.get("Ports"),
        "memory": stats.get("memory_stats"),
        "cpu": stats.get("cpu_stats"),
        "cpuPercent": cpu_percent(stats),
    }


def cpu_percent(stats: Dict[str, Any]) -> float:
    try:
        cpu = stats.get("cpu_stats", {})
        precpu = stats.get("precpu_stats", {})
        cpu_delta = float(cpu.get("cpu_usage", {}).get("total_usage", 0)) - float(precpu.get("cpu_usage", {}).get("total_usage", 0))
        system_delta = float(cpu.get("system_cpu_usage", 0)) - float(precpu.get("system_cpu_usage", 0))
        cores = max(1, int(cpu.get("online_cpus") or len(cpu.get("cpu_usage", {}).get("percpu_usage", []) or [0])))
        if system_delta > 0 and cpu_delta > 0:
            return round((cpu_delta / system_delta) * cores * 100.0, 2)
        return 0.0
    except (TypeError, ValueError, AttributeError):
        return 0.0
