"""Tests for body binding using pydantic."""

import datetime
import io
import json
from http import HTTPStatus

from pydantic import BaseModel, ValidationError

from proxyrouter import ApiError, BadRequestError, Body, Dispatcher, ResponseEntity, Router, RouterConfig, WsgiApp


class ArtistSchema(BaseModel):
    name: str


class AlbumSchema(BaseModel):
    title: str
    release_date: datetime.date
    artist: ArtistSchema


def binder(data, schema):
    if not isinstance(data, dict):
        raise BadRequestError()

    try:
        return schema(**data)
    except ValidationError as e:
        raise ApiError(
            HTTPStatus.UNPROCESSABLE_ENTITY,
            'Validation failed',
            'VALIDATION_FAILED',
            [{'loc': list(e['loc']), 'type': e['type']} for e in e.errors()]
        ) from None


def json_serializer(data):
    return json.dumps(data, default=str)


class StartResponse:
    status = None

    def __call__(self, status, headers):
        self.status = status


def endpoint(request) -> ResponseEntity:
    return ResponseEntity.ok(request.body.model_dump())


def _app():
    router = Router()
    router.post('/url', body=Body(AlbumSchema))(endpoint)
    return WsgiApp(Dispatcher(router, RouterConfig(json_serializer=json_serializer, binder=binder)))


def _environ(json_bytes):
    return {
        'REQUEST_METHOD': 'POST',
        'PATH_INFO': '/url',
        'CONTENT_TYPE': 'application/json',
        'wsgi.input': io.BytesIO(json_bytes),
        'CONTENT_LENGTH': f'{len(json_bytes)}',
    }


def test_body_binding_json():
    json_bytes = b'{"title": "Title", "release_date": "2014-08-17", "artist": {"name": "Name"}}'
    start_response = StartResponse()

    result = _app()(_environ(json_bytes), start_response)
    assert start_response.status == '200 OK'
    assert json.loads(result[0]) == json.loads(json_bytes)


def test_body_binding_validation_error():
    json_bytes = b'{"title": "Title", "release_date": "2014-08-17", "artist": {}}'
    start_response = StartResponse()

    result = _app()(_environ(json_bytes), start_response)
    assert start_response.status.startswith('422 ')
    assert json.loads(result[0]) == {
        'message': 'Validation failed',
        'code': 'VALIDATION_FAILED',
        'details': [{'loc': ['artist', 'name'], 'type': 'missing'}],
    }


def test_body_binding_not_object():
    start_response = StartResponse()

    _app()(_environ(b'[]'), start_response)
    assert start_response.status == '400 Bad Request'
