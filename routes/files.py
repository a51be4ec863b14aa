from pydantic import BaseModel, ValidationError

import exec_service as es
from http_errors import BadRequest, NotFound, format_validation_error, ok
from path_service import resolve_sandbox_path
from route_service import HandlerDefinition


class WriteFileRequest(BaseModel):
    data: str


def _target(ctx) -> str:
    return resolve_sandbox_path(ctx.query.get("path"), ctx.config.sandbox_prefix)


def list_files(ctx):
    """Directory listing, or the file's contents when the path names a file."""
    cid = ctx.param("id")
    prefix = ctx.config.sandbox_prefix
    path = _target(ctx)
    entries = es.list_directory(cid, path, prefix)
    if entries is None:
        raise NotFound(es.NOT_FOUND_MARKER)
    # `ls -p <file>` echoes the file's own path back
    if len(entries) == 1 and not entries[0].is_directory and entries[0].name == path:
        return ok(es.read_file(cid, path, prefix))
    return ok([e.as_dict() for e in entries])


def write_file(ctx):
    cid = ctx.param("id")
    path = _target(ctx)
    try:
        req = WriteFileRequest(**(ctx.body if isinstance(ctx.body, dict) else {}))
    except ValidationError as e:
        raise BadRequest("Invalid body", format_validation_error(e))
    es.write_file(cid, path, req.data, ctx.config.sandbox_prefix)
    return ok({"message": f"File {path} updated successfully"})


def create_file(ctx):
    cid = ctx.param("id")
    path = _target(ctx)
    return ok(es.create_file(cid, path, ctx.config.sandbox_prefix))


def delete_file(ctx):
    cid = ctx.param("id")
    path = _target(ctx)
    return ok(es.delete_file(cid, path, ctx.config.sandbox_prefix))


list_definition = HandlerDefinition(method="GET", handler=list_files)
put_definition = HandlerDefinition(method="PUT", url="/containers/:id/files", handler=write_file)
create_definition = HandlerDefinition(method="POST", url="/containers/:id/files", handler=create_file)
delete_definition = HandlerDefinition(method="DELETE", url="/containers/:id/files", handler=delete_file)
