"""The handler-definition tree served by the daemon.

Directory names map to nested dicts and file names to HandlerDefinition
units; route_service.build_route_table infers each unit's URL from its
position here. `[id]` segments become path parameters.
"""
from routes import console, containers, files, health

MANIFEST = {
    "index.py": health.index_definition,
    "health.py": health.definition,
    "containers": {
        "index.py": containers.list_definition,
        "create.py": containers.create_definition,
        "[id]": {
            "index.py": containers.delete_definition,
            "start.py": containers.start_definition,
            "stop.py": containers.stop_definition,
            "restart.py": containers.restart_definition,
            "command.py": console.command_definition,
            "status": {
                "index.py": containers.status_definition,
            },
            "files": {
                "index.py": files.list_definition,
                "put.py": files.put_definition,
                "create.py": files.create_definition,
                "delete.py": files.delete_definition,
            },
            "logs": {
                "index.py": console.logs_definition,
            },
        },
    },
}
