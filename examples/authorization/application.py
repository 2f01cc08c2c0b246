"""Authorization check example for proxyrouter using filter, deployed as AWS Lambda function."""

import logging
from http import HTTPStatus

from proxyrouter import ApiError, Dispatcher, Request, ResponseEntity, Router

logging.basicConfig(level=logging.INFO)

router = Router()
_PUBLIC_ROUTES = frozenset(('/public/get',))


# assume by default routes are secured
@router.get('/get')
def secured_handler(request: Request) -> ResponseEntity:
    return ResponseEntity.ok({})


@router.get('/public/get')
def public_handler(request: Request) -> ResponseEntity:
    return ResponseEntity.ok({'headers': dict(request.headers)})


@router.add_filter
def check_authorization(handler):
    def wrapper(request: Request) -> ResponseEntity:
        if request.path_pattern not in _PUBLIC_ROUTES and 'Authorization' not in request.headers:
            # TODO: actual check for authorization
            raise ApiError(HTTPStatus.UNAUTHORIZED, headers={'WWW-Authenticate': 'Bearer'})
        return handler(request)

    return wrapper


# configure as Lambda function handler: application.handler
handler = Dispatcher(router)
