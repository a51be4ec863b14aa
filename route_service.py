"""Route table builder.

Turns the handler-definition tree (a nested mapping of directory names to
subtrees and file names to HandlerDefinition units) into an immutable
RouteTable. URLs are inferred from each unit's position in the tree:

    containers/[id]/files/index.py  ->  GET /containers/:id/files
    containers/[id:number]/logs     ->  GET /containers/:id/logs

The build is all-or-nothing: any malformed unit raises RouteDefinitionError
and no table is produced.
"""
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from http_errors import ok

METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD")
PARAM_TYPES = ("string", "number", "boolean")

_EXTENSION = re.compile(r"\.[A-Za-z0-9]+$")
_PARAM_SEGMENT = re.compile(r"^\[([A-Za-z_][A-Za-z0-9_]*)(?::([A-Za-z]+))?\]$")
_URL_PARAM = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")

Handler = Callable[..., Union[Any, Awaitable[Any]]]


class RouteDefinitionError(ValueError):
    pass


def not_implemented_handler(ctx):
    return ok({"message": "You have not yet set up this route."})


@dataclass(frozen=True)
class HandlerDefinition:
    method: Optional[str] = None
    handler: Optional[Handler] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class ParamSpec:
    name: str
    declared_type: str = "string"
    index: int = 0


@dataclass(frozen=True)
class RouteDescriptor:
    method: str
    url: str
    params: Tuple[ParamSpec, ...]
    handler: Handler
    source: str = ""

    @property
    def transport_path(self) -> str:
        """The URL in the `{name}` placeholder form the HTTP framework expects."""
        return _URL_PARAM.sub(r"{\1}", self.url)

    def specificity(self) -> Tuple:
        # literal segments sort ahead of placeholders at the same depth
        segments = [s for s in self.url.split("/") if s]
        return tuple(1 if s.startswith(":") else 0 for s in segments) + (len(segments),)


@dataclass(frozen=True)
class RouteTable:
    routes: Tuple[RouteDescriptor, ...]
    index: Mapping[Tuple[str, str], RouteDescriptor] = field(repr=False)

    def __iter__(self) -> Iterator[RouteDescriptor]:
        return iter(self.routes)

    def __len__(self) -> int:
        return len(self.routes)

    def get(self, method: str, url: str) -> Optional[RouteDescriptor]:
        return self.index.get((method.upper(), url))

    def by_priority(self) -> List[RouteDescriptor]:
        return sorted(self.routes, key=lambda r: r.specificity())


def parse_param_segment(segment: str, index: int) -> Optional[ParamSpec]:
    """Return a ParamSpec for a bracketed segment, None for a literal one."""
    if "[" not in segment and "]" not in segment:
        return None
    m = _PARAM_SEGMENT.match(segment)
    if not m:
        raise RouteDefinitionError(f"malformed parameter segment {segment!r}")
    name, declared = m.group(1), m.group(2) or "string"
    if declared not in PARAM_TYPES:
        raise RouteDefinitionError(f"unknown parameter type {declared!r} in segment {segment!r}")
    return ParamSpec(name=name, declared_type=declared, index=index)


def infer_route(rel_path: List[str]) -> Tuple[str, Tuple[ParamSpec, ...]]:
    """Infer the URL pattern and parameters for a unit at `rel_path`."""
    segments = list(rel_path)
    if segments:
        segments[-1] = _EXTENSION.sub("", segments[-1])
    if segments and segments[-1] == "index":
        segments.pop()

    params: List[ParamSpec] = []
    url_parts: List[str] = []
    for seg in segments:
        spec = parse_param_segment(seg, len(params))
        if spec is None:
            url_parts.append(seg)
            continue
        if any(p.name == spec.name for p in params):
            raise RouteDefinitionError(f"duplicate parameter {spec.name!r} in {'/'.join(rel_path)}")
        params.append(spec)
        url_parts.append(":" + spec.name)
    url = "/" + "/".join(url_parts)
    return url, tuple(params)


def _normalize_url(url: str) -> str:
    url = "/" + url.strip("/")
    return url


def _walk(tree: Mapping[str, Any], prefix: List[str]) -> Iterator[Tuple[List[str], HandlerDefinition]]:
    for name in sorted(tree):
        node = tree[name]
        path = prefix + [name]
        if isinstance(node, HandlerDefinition):
            yield path, node
        elif isinstance(node, Mapping):
            yield from _walk(node, path)
        else:
            raise RouteDefinitionError(f"{'/'.join(path)} is neither a handler definition nor a directory")


def build_route_table(tree: Mapping[str, Any]) -> RouteTable:
    routes: List[RouteDescriptor] = []
    index: Dict[Tuple[str, str], RouteDescriptor] = {}
    for rel_path, unit in _walk(tree, []):
        source = "/".join(rel_path)
        inferred_url, params = infer_route(rel_path)

        method = (unit.method or "GET").upper()
        if method not in METHODS:
            raise RouteDefinitionError(f"{source}: unsupported method {unit.method!r}")

        url = _normalize_url(unit.url) if unit.url else inferred_url
        declared = _URL_PARAM.findall(url)
        if len(set(declared)) != len(declared):
            raise RouteDefinitionError(f"{source}: url {url!r} repeats a parameter name")
        missing = [p.name for p in params if p.name not in declared]
        if missing:
            raise RouteDefinitionError(f"{source}: url {url!r} does not bind parameter(s) {', '.join(missing)}")
        # placeholders only present in an explicit url are plain strings
        known = {p.name for p in params}
        extra = [n for n in declared if n not in known]
        if extra:
            params = params + tuple(ParamSpec(name=n, index=len(params) + i) for i, n in enumerate(extra))

        key = (method, url)
        if key in index:
            raise RouteDefinitionError(f"{source}: {method} {url} is already defined by {index[key].source}")

        route = RouteDescriptor(
            method=method,
            url=url,
            params=params,
            handler=unit.handler or not_implemented_handler,
            source=source,
        )
        routes.append(route)
        index[key] = route
    return RouteTable(routes=tuple(routes), index=MappingProxyType(index))
