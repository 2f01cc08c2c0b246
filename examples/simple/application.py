"""Examples for proxyrouter."""

from dataclasses import asdict, dataclass
from http import HTTPStatus
from wsgiref.simple_server import make_server

from google.protobuf import wrappers_pb2

from proxyrouter import TEXT_BODY, Body, Dispatcher, NotFoundError, Request, ResponseEntity, Router, WsgiApp


@dataclass
class User:
    name: str
    email: str


_USERS = {}

router = Router()


# handler returning dict is rendered as json, Accept: application/x-protobuf gets 406
@router.get('/users', produces=('application/json',))
def list_users(request: Request) -> ResponseEntity:
    return ResponseEntity.ok({'users': sorted(_USERS), 'query_parameters': dict(request.query_parameters)})


# path parameters are available by name from request
@router.get('/users/{name}', produces=('application/json',))
def get_user(request: Request) -> ResponseEntity:
    try:
        user = _USERS[request.path_parameters['name']]
    except KeyError:
        raise NotFoundError(request.path) from None
    return ResponseEntity.ok(asdict(user))


# json body is bound to dataclass
@router.post('/users', body=Body(User), consumes=('application/json',))
def create_user(request: Request) -> ResponseEntity:
    _USERS[request.body.name] = request.body
    return ResponseEntity.created(asdict(request.body), f'/users/{request.body.name}')


def rename_user(request: Request) -> ResponseEntity:
    user = _USERS.pop(request.path_parameters['name'], None)
    if user is None:
        raise NotFoundError(request.path)

    user.name = request.body
    _USERS[user.name] = user
    # no body results in 204 No Content
    return ResponseEntity(HTTPStatus.NO_CONTENT)


# adding route without decorator, media types declared fluently
router.add_route('PUT', '/users/{name}/name', rename_user, TEXT_BODY).consuming('text/plain')


# protobuf message is rendered as base64 binary or as json depending on Accept header
@router.get('/count')
def count(request: Request) -> ResponseEntity:
    return ResponseEntity.ok(wrappers_pb2.Int32Value(value=len(_USERS)))


# WSGI application using default config
app = WsgiApp(Dispatcher(router))
port = 8000

with make_server('', port, app) as httpd:
    print(f'Serving HTTP on port {port}...')

    # Respond to requests until process is killed
    httpd.serve_forever()
