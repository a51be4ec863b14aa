import system_service as sys_svc
from http_errors import ok
from route_service import HandlerDefinition


def index(ctx):
    return ok({"message": "Hello World"})


def health(ctx):
    return ok(sys_svc.get_health())


index_definition = HandlerDefinition(method="GET", handler=index)
definition = HandlerDefinition(method="GET", handler=health)
