from datetime import datetime, timezone
from typing import Literal, Optional, Union

from docker.errors import APIError
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, model_validator

import docker_service as ds
from http_errors import BadRequest, NotFound, created, format_validation_error, ok, translate_docker_error
from route_service import HandlerDefinition

ServerType = Literal["VANILLA", "PAPER", "FORGE", "FABRIC", "AUTO_CURSEFORGE", "FTBA"]


class CreateServerRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=3, max_length=32)
    version: Optional[str] = Field(default=None, min_length=1)
    type: ServerType = "VANILLA"
    port: Optional[int] = Field(default=None, ge=1024, le=49151)
    memory: Optional[str] = Field(default=None, min_length=1)
    modpackId: Optional[Union[StrictInt, StrictStr]] = None

    @model_validator(mode="after")
    def _ftb_needs_numeric_pack(self):
        if self.type == "FTBA" and self.modpackId is not None and not str(self.modpackId).isdigit():
            raise ValueError("modpackId must be numeric for FTBA servers")
        return self


def list_containers(ctx):
    try:
        return ok(ds.list_servers())
    except APIError as e:
        ctx.logger.error("Error listing servers: %s", e)
        return translate_docker_error(e)


def create_container(ctx):
    if not isinstance(ctx.body, dict):
        raise BadRequest("Invalid body", [{"field": "", "message": "body must be a JSON object", "type": "type_error"}])
    try:
        req = CreateServerRequest(**ctx.body)
    except ValidationError as e:
        raise BadRequest("Invalid body", format_validation_error(e))

    settings = ctx.config
    config = {
        "name": req.name,
        "version": req.version or settings.default_version,
        "type": req.type,
        "port": req.port or settings.default_port,
        "memory": req.memory or settings.default_memory,
        "modpackId": req.modpackId,
    }
    try:
        server = ds.create_server(config, settings)
    except APIError as e:
        ctx.logger.error("Error creating server %s: %s", req.name, e)
        raise translate_docker_error(e)

    return created({
        "id": server["id"],
        "name": config["name"],
        "version": config["version"],
        "type": config["type"],
        "port": server["config"]["port"],
        "status": "STOPPED",
        "memory": config["memory"],
        "modpackId": config["modpackId"],
        "createdAt": datetime.now(timezone.utc).isoformat(),
    })


def delete_container(ctx):
    cid = ctx.param("id")
    try:
        status = ds.get_server_status(cid)
        if status is None:
            raise NotFound(f"Server {cid} not found")
        if status.get("running"):
            ds.stop_server(cid)
        ds.remove_server(cid)
    except APIError as e:
        ctx.logger.error("Error deleting server %s: %s", cid, e)
        raise translate_docker_error(e)
    return ok({"message": f"Server {cid} deleted successfully"})


def _lifecycle(action, verb):
    def handler(ctx):
        cid = ctx.param("id")
        try:
            action(cid)
        except APIError as e:
            ctx.logger.error("Error %s server %s: %s", verb, cid, e)
            return translate_docker_error(e)
        return ok({"message": f"Server {cid} {verb} successfully"})

    handler.__name__ = f"{verb}_container"
    return handler


def container_status(ctx):
    cid = ctx.param("id")
    try:
        status = ds.get_server_status(cid)
    except APIError as e:
        ctx.logger.error("Error getting server status %s: %s", cid, e)
        raise translate_docker_error(e)
    if status is None:
        raise NotFound(f"Server {cid} not found")
    return ok(status)


list_definition = HandlerDefinition(handler=list_containers)
create_definition = HandlerDefinition(method="POST", url="/containers", handler=create_container)
delete_definition = HandlerDefinition(method="DELETE", handler=delete_container)
start_definition = HandlerDefinition(method="POST", handler=_lifecycle(lambda cid: ds.start_server(cid), "started"))
stop_definition = HandlerDefinition(method="POST", handler=_lifecycle(lambda cid: ds.stop_server(cid), "stopped"))
restart_definition = HandlerDefinition(method="POST", handler=_lifecycle(lambda cid: ds.restart_server(cid), "restarted"))
status_definition = HandlerDefinition(method="GET", handler=container_status)
