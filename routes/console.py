from pydantic import BaseModel, Field, ValidationError

import exec_service as es
from http_errors import BadRequest, format_validation_error, ok
from route_service import HandlerDefinition


class CommandRequest(BaseModel):
    command: str = Field(min_length=1)
    lines: bool = False


def run_command(ctx):
    cid = ctx.param("id")
    try:
        req = CommandRequest(**(ctx.body if isinstance(ctx.body, dict) else {}))
    except ValidationError as e:
        raise BadRequest("Invalid body", format_validation_error(e))
    ctx.logger.info("console command for %s: %s", cid, req.command)
    result = es.run_command(
        cid,
        req.command,
        bridge=ctx.config.console_bridge,
        elevation=ctx.config.elevation_prefix,
        lines=req.lines,
    )
    return ok(result)


def container_logs(ctx):
    store = ctx.request.app.state.log_store
    return ok(store.get_logs(ctx.param("id")))


command_definition = HandlerDefinition(method="POST", handler=run_command)
logs_definition = HandlerDefinition(handler=container_logs)
