"""
API Gateway proxy request router.

Routes single request/single response invocations by method, path template
and media type negotiation. Handler results are rendered as JSON or as
base64-encoded protobuf messages.

License: MIT
"""

import base64
import binascii
import functools
import json
import logging
from dataclasses import dataclass, is_dataclass
from enum import Enum
from http import HTTPStatus
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Tuple, Union
from urllib.parse import parse_qsl

from google.protobuf import json_format
from google.protobuf.message import DecodeError, Message

__all__ = [
    'APPLICATION_JSON', 'APPLICATION_X_PROTOBUF', 'MEDIA_RANGE_ALL', 'NO_BODY', 'TEXT_BODY',
    'ApiError', 'BadRequestError', 'MethodNotAllowedError', 'NotAcceptableError', 'NotFoundError',
    'RequestEntityTooLargeError', 'UnsupportedMediaTypeError', 'UnsupportedResponseError',
    'Body', 'BodyDecoder', 'BodyKind', 'Dispatcher', 'Headers', 'MediaType', 'NoBody', 'PathParameter',
    'PathTemplate', 'ProxyRequest', 'ProxyResponse', 'Request', 'RequestMatchResult', 'RequestPredicate',
    'ResponseEntity', 'Route', 'Router', 'RouterConfig', 'TextBody', 'WsgiApp',
    'content_type_matches', 'fallback_error', 'is_compatible', 'negotiate_media_type', 'path_matches',
]

APPLICATION_JSON = 'application/json'
APPLICATION_X_PROTOBUF = 'application/x-protobuf'
MEDIA_RANGE_ALL = '*/*'

_ACCEPT_HEADER = 'Accept'
_ALLOW_HEADER = 'Allow'
_CONTENT_LENGTH_HEADER = 'Content-Length'
_CONTENT_TYPE_HEADER = 'Content-Type'
_LOCATION_HEADER = 'Location'

_WSGI_CONTENT_LENGTH_HEADER = 'CONTENT_LENGTH'
_WSGI_CONTENT_TYPE_HEADER = 'CONTENT_TYPE'
_WSGI_HTTP_HEADER_PREFIX = 'HTTP_'
_WSGI_PATH_INFO_HEADER = 'PATH_INFO'
_WSGI_QUERY_STRING_HEADER = 'QUERY_STRING'
_WSGI_REQUEST_METHOD_HEADER = 'REQUEST_METHOD'

_NO_DATA_BODY = b''

_STATUS_ROW_FROM_CODE = {s.value: f'{s.value} {s.phrase}' for s in HTTPStatus}

_PATH_SEPARATOR = '/'
_PATH_PARAMETER_START = '{'
_PATH_PARAMETER_END = '}'

_MEDIA_TYPE_WILDCARD = '*'
_MEDIA_RANGE_SEPARATOR = ','

_BODY_METHODS = frozenset(('PATCH', 'POST', 'PUT'))
_DEFAULT_MEDIA_TYPES = (APPLICATION_JSON, APPLICATION_X_PROTOBUF)

_logger = logging.getLogger('proxyrouter')


class ApiError(Exception):
    """Known failure rendered to the client as structured error body."""

    def __init__(self,
                 status: int,
                 message: Optional[str] = None,
                 code: Optional[str] = None,
                 details: Any = None,
                 headers: Optional[dict] = None) -> None:
        try:
            known_status: Optional[HTTPStatus] = HTTPStatus(status)
        except ValueError:
            known_status = None

        if message is None:
            message = known_status.phrase if known_status is not None else 'Error'
        if code is None:
            code = known_status.name if known_status is not None else 'ERROR'

        super().__init__(status, message, code)
        self.status = int(status)
        self.message = message
        self.code = code
        self.details = details
        self.headers = headers

    def __str__(self) -> str:
        return f'{self.status} {self.code}: {self.message}'


class BadRequestError(ApiError):
    def __init__(self, message: Optional[str] = None, details: Any = None) -> None:
        super().__init__(HTTPStatus.BAD_REQUEST, message, 'BAD_REQUEST', details)


class NotFoundError(ApiError):
    def __init__(self, path: str) -> None:
        super().__init__(HTTPStatus.NOT_FOUND, code='NOT_FOUND')
        self.path = path


class MethodNotAllowedError(ApiError):
    def __init__(self, allowed: Iterable[str]) -> None:
        allowed = tuple(dict.fromkeys(allowed))
        super().__init__(HTTPStatus.METHOD_NOT_ALLOWED, code='METHOD_NOT_ALLOWED',
                         headers={_ALLOW_HEADER: ', '.join(allowed)})
        self.allowed = frozenset(allowed)


class NotAcceptableError(ApiError):
    def __init__(self) -> None:
        super().__init__(HTTPStatus.NOT_ACCEPTABLE, code='NOT_ACCEPTABLE')


class UnsupportedMediaTypeError(ApiError):
    def __init__(self) -> None:
        super().__init__(HTTPStatus.UNSUPPORTED_MEDIA_TYPE, code='UNSUPPORTED_MEDIA_TYPE')


class RequestEntityTooLargeError(ApiError):
    def __init__(self) -> None:
        # 413 member and phrase were renamed in python 3.13
        super().__init__(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, 'Request Entity Too Large', 'REQUEST_ENTITY_TOO_LARGE')


class UnsupportedResponseError(ValueError):
    """Handler result cannot be rendered in negotiated media type."""


class MediaType(NamedTuple):
    type: str
    subtype: str
    parameters: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def parse(cls, value: str) -> 'MediaType':
        mime, _, parameters = value.partition(';')
        # rfc7231 type and subtype are case-insensitive
        type_, separator, subtype = mime.strip().lower().partition('/')
        if not (type_ and separator and subtype) or '/' in subtype:
            raise ValueError(f'Invalid media type {value!r}')

        parsed = []
        for parameter in parameters.split(';'):
            name, assignment, parameter_value = parameter.partition('=')
            name = name.strip().lower()
            if name and assignment:
                parsed.append((name, parameter_value.strip().strip('"')))

        return cls(type_, subtype, tuple(parsed))

    @property
    def is_wildcard(self) -> bool:
        return self.type == _MEDIA_TYPE_WILDCARD or self.subtype == _MEDIA_TYPE_WILDCARD

    def is_compatible(self, other: 'MediaType') -> bool:
        # parameters are not significant for compatibility
        return _media_type_component_matches(self.type, other.type) and \
            _media_type_component_matches(self.subtype, other.subtype)

    def __str__(self) -> str:
        return f'{self.type}/{self.subtype}' + ''.join(f';{n}={v}' for n, v in self.parameters)


def is_compatible(candidate: str, accepted: str) -> bool:
    try:
        return MediaType.parse(candidate).is_compatible(MediaType.parse(accepted))
    except ValueError:
        return False


def content_type_matches(actual: Optional[str], accepted: Iterable[str]) -> bool:
    """
    Check media type header value against acceptable media types.

    Header value can be list of media ranges, as in Accept header. Absent header matches only
    empty set of acceptable media types.
    """
    accepted = tuple(accepted)
    if not actual:
        return not accepted

    return any(is_compatible(candidate, media_type)
               for candidate in _split_media_ranges(actual) for media_type in accepted)


def negotiate_media_type(accept: Optional[str], produces: Iterable[str]) -> Optional[str]:
    """Select first produced media type satisfying earliest compatible media range."""
    produces = tuple(produces)
    for media_range in _split_media_ranges(accept or MEDIA_RANGE_ALL):
        for media_type in produces:
            if is_compatible(media_range, media_type):
                return media_type

    return None


class PathParameter:
    __slots__ = ('name',)

    def __init__(self, name: str) -> None:
        self.name = name

    def match(self, path_segment: str) -> bool:
        # do not allow zero-length strings
        return bool(path_segment)

    def __repr__(self) -> str:
        return f'{_PATH_PARAMETER_START}{self.name}{_PATH_PARAMETER_END}'


class PathTemplate:
    """Path pattern with literal and {name} placeholder segments."""

    __slots__ = ('pattern', 'segments')

    def __init__(self, pattern: str) -> None:
        if not pattern.startswith(_PATH_SEPARATOR):
            raise ValueError(f'{pattern}: path must start with {_PATH_SEPARATOR}')

        self.pattern = pattern
        self.segments: Tuple[Union[str, PathParameter], ...] = ()
        if pattern == _PATH_SEPARATOR:
            return

        segments: List[Union[str, PathParameter]] = []
        parameter_names = set()
        for path_segment in _split_path(pattern):
            if not path_segment:
                raise ValueError(f'{pattern}: missing path segment')
            elif path_segment.startswith(_PATH_PARAMETER_START):
                parameter_name = path_segment[len(_PATH_PARAMETER_START):-len(_PATH_PARAMETER_END)]
                if not (path_segment.endswith(_PATH_PARAMETER_END) and parameter_name):
                    raise ValueError(f'{pattern}: invalid path parameter definition {path_segment}')
                if parameter_name in parameter_names:
                    raise ValueError(f'{pattern}: duplicate path parameter {parameter_name}')

                parameter_names.add(parameter_name)
                segments.append(PathParameter(parameter_name))
            else:
                segments.append(path_segment)

        self.segments = tuple(segments)

    def matches(self, path: str) -> bool:
        return self._match(path) is not None

    def extract(self, path: str) -> Dict[str, str]:
        path_parameters = self._match(path)
        if path_parameters is None:
            raise ValueError(f'{path} does not match {self.pattern}')

        return path_parameters

    def _match(self, path: str) -> Optional[Dict[str, str]]:
        path_segments = _split_path(path) if path and path != _PATH_SEPARATOR else []
        if len(path_segments) != len(self.segments):
            return None

        path_parameters = {}
        for segment, path_segment in zip(self.segments, path_segments):
            if isinstance(segment, PathParameter):
                if not segment.match(path_segment):
                    return None
                # XXX no percent-decoding, transport adapter is responsible for that
                path_parameters[segment.name] = path_segment
            elif segment != path_segment:
                return None

        return path_parameters

    def __repr__(self) -> str:
        return f'PathTemplate({self.pattern!r})'


@functools.lru_cache(maxsize=256)
def _path_template(pattern: str) -> PathTemplate:
    return PathTemplate(pattern)


def path_matches(pattern: str, path: str) -> bool:
    """Check path against pattern, malformed pattern matches nothing."""
    try:
        template = _path_template(pattern)
    except ValueError:
        return False

    return template.matches(path)


class Headers(Mapping[str, str]):
    """Read-only header mapping with case-insensitive lookup."""

    __slots__ = ('_items',)

    def __init__(self, headers: Optional[Mapping[str, str]] = None) -> None:
        self._items = {name.lower(): (name, value) for name, value in (headers or {}).items()}

    def __getitem__(self, name: str) -> str:
        return self._items[name.lower()][1]

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f'Headers({dict(self.items())!r})'


@dataclass(frozen=True, slots=True, repr=False)
class ProxyRequest:
    """Inbound request envelope, read-only after construction."""

    method: str
    path: str
    headers: Optional[Mapping[str, str]] = None
    body: Optional[str] = None
    query_parameters: Optional[Mapping[str, str]] = None

    def __post_init__(self) -> None:
        headers = self.headers
        object.__setattr__(self, 'path', self.path or _PATH_SEPARATOR)
        object.__setattr__(self, 'headers', headers if isinstance(headers, Headers) else Headers(headers))
        object.__setattr__(self, 'query_parameters', MappingProxyType(dict(self.query_parameters or {})))

    @property
    def accept(self) -> str:
        # absence of Accept header means no constraint
        return self.headers.get(_ACCEPT_HEADER) or MEDIA_RANGE_ALL

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get(_CONTENT_TYPE_HEADER) or None

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> 'ProxyRequest':
        """Create request from API Gateway proxy integration event."""
        return cls(
            event.get('httpMethod') or '',
            event.get('path') or _PATH_SEPARATOR,
            event.get('headers'),
            event.get('body'),
            event.get('queryStringParameters'),
        )

    @classmethod
    def from_environ(cls, environ: Mapping[str, Any], max_content_length: Optional[int] = None) -> 'ProxyRequest':
        """Create request from WSGI environ."""
        body = _read_wsgi_body(environ, max_content_length)

        headers = {}
        for key, value in environ.items():
            if key.startswith(_WSGI_HTTP_HEADER_PREFIX):
                headers[key[len(_WSGI_HTTP_HEADER_PREFIX):].replace('_', '-').title()] = value

        # wsgiref reports text/plain for requests without entity
        content_type = environ.get(_WSGI_CONTENT_TYPE_HEADER)
        if content_type and body is not None:
            headers[_CONTENT_TYPE_HEADER] = content_type

        return cls(
            environ[_WSGI_REQUEST_METHOD_HEADER],
            environ.get(_WSGI_PATH_INFO_HEADER) or _PATH_SEPARATOR,
            headers,
            body,
            _parse_query_string(environ.get(_WSGI_QUERY_STRING_HEADER)),
        )

    def __repr__(self) -> str:
        return f'ProxyRequest({self.method} {self.path})'


@dataclass(frozen=True, slots=True, repr=False)
class Request:
    """Request as seen by handler: envelope, decoded body and routing data."""

    proxy_request: ProxyRequest
    body: Any
    path_pattern: str
    path_parameters: Optional[Mapping[str, str]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, 'path_parameters', MappingProxyType(dict(self.path_parameters or {})))

    @property
    def method(self) -> str:
        return self.proxy_request.method

    @property
    def path(self) -> str:
        return self.proxy_request.path

    @property
    def headers(self) -> Headers:
        return self.proxy_request.headers

    @property
    def query_parameters(self) -> Mapping[str, str]:
        return self.proxy_request.query_parameters

    @property
    def raw_body(self) -> Optional[str]:
        return self.proxy_request.body


class RequestMatchResult(NamedTuple):
    match_path: bool = False
    match_method: bool = False
    match_accept_type: bool = False
    match_content_type: bool = False

    @property
    def match(self) -> bool:
        return self.match_path and self.match_method and self.match_accept_type and self.match_content_type


class RequestPredicate:
    """Route match condition: method, path pattern, produced and consumed media types."""

    __slots__ = ('method', 'path_pattern', 'template', 'produces', 'consumes', '_frozen')

    def __init__(self,
                 method: str,
                 path_pattern: str,
                 produces: Optional[Iterable[str]] = None,
                 consumes: Optional[Iterable[str]] = None) -> None:
        if not method:
            raise ValueError(f'{path_pattern}: no method defined')

        self._frozen = False
        self.method = method.upper()
        self.path_pattern = path_pattern
        self.template = PathTemplate(path_pattern)
        self.produces: Tuple[str, ...] = ()
        self.consumes: Tuple[str, ...] = ()

        self.producing(*(_DEFAULT_MEDIA_TYPES if produces is None else produces))
        if consumes is None:
            consumes = _DEFAULT_MEDIA_TYPES if self.method in _BODY_METHODS else ()
        self.consuming(*consumes)

    def consuming(self, *media_types: str) -> 'RequestPredicate':
        self._check_mutable()
        self.consumes = _media_types(self.path_pattern, media_types)
        return self

    def producing(self, *media_types: str) -> 'RequestPredicate':
        self._check_mutable()
        produces = _media_types(self.path_pattern, media_types)
        wildcards = [m for m in produces if MediaType.parse(m).is_wildcard]
        if wildcards:
            raise ValueError(f'{self.path_pattern}: produced media type must be concrete, got {", ".join(wildcards)}')

        self.produces = produces
        return self

    def freeze(self) -> 'RequestPredicate':
        self._frozen = True
        return self

    def match(self, request: ProxyRequest) -> RequestMatchResult:
        # every condition is evaluated, partial results select fallback error
        return RequestMatchResult(
            match_path=self.template.matches(request.path),
            match_method=self.method == (request.method or '').upper(),
            match_accept_type=content_type_matches(request.accept, self.produces),
            match_content_type=content_type_matches(request.content_type, self.consumes),
        )

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RuntimeError(f'{self.method} {self.path_pattern}: route is already registered')

    def __repr__(self) -> str:
        return (f'RequestPredicate({self.method} {self.path_pattern}, '
                f'produces={list(self.produces)}, consumes={list(self.consumes)})')


class BodyDecoder:
    """Conversion of request body to handler input, declared per route."""

    __slots__ = ()

    def decode(self, config: 'RouterConfig', request: ProxyRequest) -> Any:
        raise NotImplementedError


class NoBody(BodyDecoder):
    __slots__ = ()

    def decode(self, config: 'RouterConfig', request: ProxyRequest) -> Any:
        return None


class TextBody(BodyDecoder):
    __slots__ = ()

    def decode(self, config: 'RouterConfig', request: ProxyRequest) -> Any:
        if request.body is None:
            raise BadRequestError('Missing request body')

        return request.body


class Body(BodyDecoder):
    """
    Structured request body of given type.

    Protobuf message types are decoded from base64 encoded binary or from JSON depending on
    request content type. Other types are decoded with configured JSON deserializer and
    converted to requested type by configured binder.
    """

    __slots__ = ('type',)

    def __init__(self, body_type: Any = dict) -> None:
        self.type = body_type

    def decode(self, config: 'RouterConfig', request: ProxyRequest) -> Any:
        if request.body is None:
            raise BadRequestError('Missing request body')

        if isinstance(self.type, type) and issubclass(self.type, Message):
            return _decode_message(self.type, request)

        try:
            data = config.json_deserializer(request.body)
        except ValueError as e:
            raise BadRequestError('Malformed request body') from e

        return config.binder(data, self.type)

    def __repr__(self) -> str:
        return f'Body({getattr(self.type, "__name__", self.type)})'


NO_BODY = NoBody()
TEXT_BODY = TextBody()


def _decode_message(message_type: type, request: ProxyRequest) -> Message:
    message = message_type()
    try:
        if is_compatible(request.content_type or '', APPLICATION_X_PROTOBUF):
            message.ParseFromString(base64.b64decode(request.body, validate=True))
        else:
            json_format.Parse(request.body, message)
    except (binascii.Error, DecodeError, json_format.ParseError) as e:
        raise BadRequestError('Malformed request body') from e

    return message


class BodyKind(Enum):
    EMPTY = 'empty'
    STRUCTURED = 'structured'
    MESSAGE = 'message'


class ResponseEntity:
    __slots__ = ('status_code', 'body', 'headers', 'kind')

    def __init__(self,
                 status_code: int = HTTPStatus.OK,
                 body: Any = None,
                 headers: Optional[Mapping[str, str]] = None,
                 kind: Optional[BodyKind] = None) -> None:
        self.status_code = int(status_code)
        self.body = body
        self.headers = dict(headers) if headers else {}
        if kind is None:
            if body is None:
                kind = BodyKind.EMPTY
            elif isinstance(body, Message):
                kind = BodyKind.MESSAGE
            else:
                kind = BodyKind.STRUCTURED
        self.kind = kind

    @classmethod
    def ok(cls, body: Any = None, headers: Optional[Mapping[str, str]] = None) -> 'ResponseEntity':
        return cls(HTTPStatus.OK, body, headers)

    @classmethod
    def created(cls, body: Any = None, location: Optional[str] = None,
                headers: Optional[Mapping[str, str]] = None) -> 'ResponseEntity':
        headers = dict(headers) if headers else {}
        if location is not None:
            headers[_LOCATION_HEADER] = location
        return cls(HTTPStatus.CREATED, body, headers)

    @classmethod
    def no_content(cls, headers: Optional[Mapping[str, str]] = None) -> 'ResponseEntity':
        return cls(HTTPStatus.NO_CONTENT, None, headers, BodyKind.EMPTY)

    def __repr__(self) -> str:
        return f'ResponseEntity({self.status_code}, {self.kind.value} {type(self.body).__name__})'


class ProxyResponse(NamedTuple):
    status_code: int
    headers: Dict[str, str]
    body: Optional[str] = None

    def to_event(self) -> dict:
        """API Gateway proxy integration response."""
        return {
            'statusCode': self.status_code,
            'headers': dict(self.headers),
            'body': self.body,
            'isBase64Encoded': False,
        }


def _default_binder(data, result_type):
    if is_dataclass(result_type):
        if not isinstance(data, dict):
            raise BadRequestError()

        try:
            return result_type(**data)
        except TypeError as e:
            raise BadRequestError() from e

    if not isinstance(data, result_type):
        raise BadRequestError()

    return data


def _message_to_json_value(config: 'RouterConfig', message: Message) -> Any:
    # well-known wrapper types are rendered as bare values
    return json_format.MessageToDict(message, preserving_proto_field_name=config.preserving_proto_field_name)


def _default_response_serializer(config: 'RouterConfig',
                                 response: ResponseEntity,
                                 content_type: Optional[str]) -> ProxyResponse:
    if not isinstance(response, ResponseEntity):
        raise UnsupportedResponseError(f'Unknown result {response!r}')

    if response.kind is BodyKind.EMPTY:
        return ProxyResponse(HTTPStatus.NO_CONTENT, dict(response.headers))

    if content_type is None:
        raise UnsupportedResponseError(f'No media type negotiated for {response!r}')

    headers = {**response.headers, _CONTENT_TYPE_HEADER: content_type}
    if is_compatible(content_type, APPLICATION_X_PROTOBUF):
        if response.kind is not BodyKind.MESSAGE:
            raise UnsupportedResponseError(f'Cannot encode {response!r} as {content_type}')

        body = base64.b64encode(response.body.SerializeToString()).decode('ascii')
    elif is_compatible(content_type, APPLICATION_JSON):
        if response.kind is BodyKind.MESSAGE:
            value = _message_to_json_value(config, response.body)
        else:
            value = response.body
        body = _as_text(config.json_serializer(value))
    else:
        raise UnsupportedResponseError(f'Unsupported response {response!r} for {content_type}')

    return ProxyResponse(response.status_code, headers, body)


def _default_error_serializer(config: 'RouterConfig', exc: ApiError) -> ProxyResponse:
    # error responses are always json, regardless of Accept header
    body = config.json_serializer({'message': exc.message, 'code': exc.code, 'details': exc.details})
    headers = {**(exc.headers or {}), _CONTENT_TYPE_HEADER: APPLICATION_JSON}
    return ProxyResponse(exc.status, headers, _as_text(body))


def _default_internal_error_serializer(config: 'RouterConfig', exc: Exception) -> ProxyResponse:
    status = HTTPStatus.INTERNAL_SERVER_ERROR
    body = config.json_serializer({'message': 'Internal Server Error', 'code': 'INTERNAL_SERVER_ERROR'})
    return ProxyResponse(status, {_CONTENT_TYPE_HEADER: APPLICATION_JSON}, _as_text(body))


def _json_dumps_adapter(obj: Any) -> bytes:
    # always utf-8: https://tools.ietf.org/html/rfc8259#section-8.1
    return json.dumps(obj, separators=(',', ':')).encode()


@dataclass
class RouterConfig:
    json_deserializer: Callable[[Union[str, bytes]], Any] = staticmethod(json.loads)
    json_serializer: Callable[[Any], Union[str, bytes]] = staticmethod(_json_dumps_adapter)
    binder: Callable[[Any, Any], Any] = staticmethod(_default_binder)
    response_serializer: Callable[['RouterConfig', ResponseEntity, Optional[str]],
                                  ProxyResponse] = staticmethod(_default_response_serializer)
    error_serializer: Callable[['RouterConfig', ApiError], ProxyResponse] = staticmethod(_default_error_serializer)
    internal_error_serializer: Callable[['RouterConfig', Exception],
                                        ProxyResponse] = staticmethod(_default_internal_error_serializer)
    preserving_proto_field_name: bool = False
    logger: Union[logging.Logger, logging.LoggerAdapter] = _logger
    max_content_length: Optional[int] = None


Handler = Callable[[Request], ResponseEntity]
Filter = Callable[[Handler], Handler]


class Route(NamedTuple):
    predicate: RequestPredicate
    handler: Handler
    body: BodyDecoder


class Router:
    """Ordered route table with filters shared by all routes."""

    def __init__(self) -> None:
        self.routes: List[Route] = []
        self.filters: List[Filter] = []

    def add_route(self,
                  method: str,
                  path_pattern: str,
                  handler: Handler,
                  body: BodyDecoder = NO_BODY) -> RequestPredicate:
        if not callable(handler):
            raise ValueError(f'{path_pattern}: handler {handler!r} is not callable')
        if not isinstance(body, BodyDecoder):
            raise ValueError(f'{path_pattern}: invalid body declaration {body!r}')

        predicate = RequestPredicate(method, path_pattern)
        self.routes.append(Route(predicate, handler, body))
        return predicate

    def route(self,
              method: str,
              path_pattern: str,
              body: BodyDecoder = NO_BODY,
              consumes: Union[str, Iterable[str], None] = None,
              produces: Union[str, Iterable[str], None] = None) -> Callable:
        # single media type can be given as plain string
        if isinstance(consumes, str):
            consumes = (consumes,)
        if isinstance(produces, str):
            produces = (produces,)

        def wrapper(handler):
            predicate = self.add_route(method, path_pattern, handler, body)
            if consumes is not None:
                predicate.consuming(*consumes)
            if produces is not None:
                predicate.producing(*produces)
            return handler

        return wrapper

    def get(self, path_pattern: str, **kwargs) -> Callable:
        return self.route('GET', path_pattern, **kwargs)

    def post(self, path_pattern: str, **kwargs) -> Callable:
        return self.route('POST', path_pattern, **kwargs)

    def put(self, path_pattern: str, **kwargs) -> Callable:
        return self.route('PUT', path_pattern, **kwargs)

    def patch(self, path_pattern: str, **kwargs) -> Callable:
        return self.route('PATCH', path_pattern, **kwargs)

    def delete(self, path_pattern: str, **kwargs) -> Callable:
        return self.route('DELETE', path_pattern, **kwargs)

    def add_filter(self, filter_: Filter) -> Filter:
        """Add handler wrapper, first added filter is outermost."""
        self.filters.append(filter_)
        return filter_

    def filter(self, handler: Handler) -> Handler:
        return functools.reduce(lambda wrapped, f: f(wrapped), reversed(self.filters), handler)


def fallback_error(match_results: Iterable[RequestMatchResult], path: str, allowed: Iterable[str] = ()) -> ApiError:
    """Most specific error for request without fully matching route."""
    match_results = tuple(match_results)
    if any(r.match_path and r.match_method and not r.match_content_type for r in match_results):
        return UnsupportedMediaTypeError()
    if any(r.match_path and r.match_method and not r.match_accept_type for r in match_results):
        return NotAcceptableError()
    if any(r.match_path and not r.match_method for r in match_results):
        return MethodNotAllowedError(allowed)
    return NotFoundError(path)


class Dispatcher:
    def __init__(self, router: Router, config: Optional[RouterConfig] = None) -> None:
        self.config = config or RouterConfig()
        # route table is immutable from here on
        self.routes: Tuple[Route, ...] = tuple(
            Route(route.predicate.freeze(), router.filter(route.handler), route.body) for route in router.routes
        )

    def __call__(self, event: Mapping[str, Any], context: Any = None) -> dict:
        """AWS Lambda entry point for API Gateway proxy integration."""
        return self.handle(ProxyRequest.from_event(event)).to_event()

    def handle(self, request: ProxyRequest) -> ProxyResponse:
        logger = self.config.logger
        logger.debug('Handling request with method %s and path %s - Accept: %s Content-Type: %s',
                     request.method, request.path, request.accept, request.content_type)

        match_results: List[RequestMatchResult] = []
        for route in self.routes:
            match_result = route.predicate.match(request)
            logger.debug('Match result for route %r is %r', route.predicate, match_result)
            if match_result.match:
                return self.invoke(route, request)

            match_results.append(match_result)

        allowed = (route.predicate.method for route, r in zip(self.routes, match_results) if r.match_path)
        return self.config.error_serializer(self.config, fallback_error(match_results, request.path, allowed))

    def invoke(self, route: Route, request: ProxyRequest) -> ProxyResponse:
        config = self.config
        predicate = route.predicate
        try:
            body = route.body.decode(config, request)
            path_parameters = predicate.template.extract(request.path)
            response = route.handler(Request(request, body, predicate.path_pattern, path_parameters))

            content_type = negotiate_media_type(request.accept, predicate.produces)
            return config.response_serializer(config, response, content_type)
        except ApiError as exc:
            config.logger.info('Api error while handling %s %s - %s', request.method, request.path, exc)
            return config.error_serializer(config, exc)
        except Exception as exc:  # noqa: B902
            config.logger.exception('Unhandled exception while handling %s %s', request.method, request.path,
                                    exc_info=exc)
            return config.internal_error_serializer(config, exc)


class WsgiApp:
    def __init__(self, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher

    def __call__(self, environ: Dict[str, Any], start_response: Callable) -> Iterable:
        config = self.dispatcher.config
        try:
            request = ProxyRequest.from_environ(environ, config.max_content_length)
        except ApiError as exc:
            response = config.error_serializer(config, exc)
        else:
            response = self.dispatcher.handle(request)

        body = response.body.encode() if response.body is not None else _NO_DATA_BODY
        headers = {**response.headers, _CONTENT_LENGTH_HEADER: str(len(body))}

        if environ[_WSGI_REQUEST_METHOD_HEADER] == 'HEAD':
            body = _NO_DATA_BODY

        status = response.status_code
        start_response(_STATUS_ROW_FROM_CODE.get(status) or f'{status} Unknown', [*headers.items()])
        return body,


def _read_wsgi_body(environ: Mapping[str, Any], max_content_length: Optional[int]) -> Optional[str]:
    raw_content_length = environ.get(_WSGI_CONTENT_LENGTH_HEADER)
    if raw_content_length is None or raw_content_length == '':
        return None

    try:
        content_length = int(raw_content_length)
    except ValueError as e:
        raise BadRequestError('Invalid Content-Length') from e

    if content_length < 0:
        raise BadRequestError('Content-Length contains negative length')

    if content_length == 0:
        return None

    if max_content_length is not None and max_content_length < content_length:
        raise RequestEntityTooLargeError()

    try:
        return environ['wsgi.input'].read(content_length).decode()
    except UnicodeDecodeError as e:
        raise BadRequestError('Request body is not valid utf-8') from e


def _parse_query_string(qs: Optional[str]) -> Dict[str, str]:
    if not qs:
        return {}

    try:
        data: Dict[str, str] = {}
        # XXX return single/first value for each parameter only
        for name, value in parse_qsl(qs, strict_parsing=True):
            if name not in data:
                data[name] = value
        return data
    except ValueError as e:
        raise BadRequestError('Malformed query string') from e


def _media_types(path_pattern: str, media_types: Iterable[str]) -> Tuple[str, ...]:
    result = []
    for media_type in media_types:
        try:
            MediaType.parse(media_type)
        except ValueError:
            raise ValueError(f'{path_pattern}: invalid media type {media_type!r}') from None
        result.append(media_type.strip())

    # declaration order is significant for response negotiation
    return tuple(dict.fromkeys(result))


def _media_type_component_matches(component: str, other: str) -> bool:
    return component == other or component == _MEDIA_TYPE_WILDCARD or other == _MEDIA_TYPE_WILDCARD


def _split_media_ranges(header: str) -> List[str]:
    return [r.strip() for r in header.split(_MEDIA_RANGE_SEPARATOR) if r.strip()]


def _split_path(path: str) -> List[str]:
    path_segments = path.split(_PATH_SEPARATOR)
    return path_segments[1:] if path.startswith(_PATH_SEPARATOR) else path_segments


def _as_text(data: Union[str, bytes]) -> str:
    return data.decode() if isinstance(data, (bytes, bytearray)) else data
