"""
.. py:module:: client
   :synopsis: JSON requests to a CouchDB server.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

The :class:`.Client` is the entry point for all requests to CouchDB: it
encodes the request body as JSON, dispatches the request (see
:mod:`.network`), and decodes and normalizes (see :mod:`.response`) the
result.

A simple usage example, given a running server with a python-tests
database:

>>> client = Client(ConnectionConfig.FromUrl('http://localhost:5984'))
>>> doc = client.request('PUT', '/python-tests/john', # doctest: +SKIP
...                      body={'name': 'John Doe'})
>>> doc.id == doc['id'] == doc['_id'] == 'john' # doctest: +SKIP
True
>>> client.request('HEAD', '/python-tests/john')[1] # doctest: +SKIP
200
"""
import logging

from settee import serializer
from settee.config import COUCHDB_URL, ConnectionConfig
from settee.network import HANDLERS, Data, DecodeError, Dispatch, \
        Dispatcher, Envelope, Failure, Headers, Listener, Pool, Response
from settee.response import Normalize

__all__ = ['Client']


class Client:
    """
    A client for the server of a :class:`.ConnectionConfig` and its
    alternates.
    """

    def __init__(self, config:ConnectionConfig=None, pool:Pool=None):
        """
        :param config: The connection settings (default: a configuration
                       for :data:`.config.COUCHDB_URL`).
        :param pool: The connection :class:`.network.Pool` to (re-)use.
        """
        if config is None:
            config = ConnectionConfig.FromUrl(COUCHDB_URL)

        self.connection = config
        self.dispatcher = Dispatcher(config, pool)
        self.L = logging.getLogger("Client({})".format(config.url))

    def __repr__(self) -> str:
        return '<{} {}>'.format(type(self).__name__, self.connection.url)

    def close(self):
        """
        Close all idle connections.
        """
        self.dispatcher.pool.clear()

    def rawRequest(self, method:str, path:str, query:dict=None,
                   body:object=None, headers:dict=None) -> Dispatch:
        """
        Prepare a request without any JSON handling, e.g., for attachments;
        it is sent when the returned :class:`.network.Dispatch` is consumed.
        See :meth:`.network.Dispatcher.dispatch` for the parameters.
        """
        return self.dispatcher.dispatch(method, path, query, body, headers)

    def request(self, method:str, path:str, options:dict=None,
                body:object=None, headers:dict=None,
                listener:Listener=None) -> object:
        """
        Make a *method* request to *path*, returning the normalized result.

        :param method: "GET", "POST", "PUT", "DELETE", "HEAD", or "COPY".
        :param path: The path to the resource.
        :param options: Optional query parameters.
        :param body: A Python object that can be serialized to JSON; functions
                     are serialized as their source text.
        :param headers: Optional headers for the request.
        :param listener: An optional :class:`.network.Listener` notified
                         about each event of the dispatch.
        :return: The :mod:`.response` result, the parsed JSON if the
                 configuration is *raw*, or a ``(headers, status)`` tuple for
                 HEAD requests.
        :raise TypeError: If the body cannot be serialized to JSON.
        :raise ValueError: If the body contains NaN or infinite floats.
        :raise TransportError: If the request could not be completed.
        :raise DecodeError: If the response is not valid JSON.
        :raise HTTPError: If the server reported an error.
        """
        method = method.upper()
        headers = Headers(headers) if headers else Headers()
        headers.setdefault('Accept', 'application/json')

        if body is not None:
            body = serializer.Encode(body).encode('utf-8')
            headers['Content-Length'] = str(len(body))
            headers['Content-Type'] = 'application/json'
        elif method == 'DELETE':
            headers.setdefault('Content-Length', '0')

        dispatch = self.rawRequest(method, path, options, body, headers)
        envelope = self._collect(dispatch, listener)

        if method == 'HEAD':
            return envelope.headers, envelope.status

        try:
            json = serializer.Decode(envelope.body.decode('utf-8'))
        except ValueError as e:
            raise DecodeError('{} {}: {}'.format(method, dispatch.selector, e),
                              envelope.status, envelope.headers) from e

        if isinstance(json, dict) and json.get('error'):
            error = Normalize(json, envelope)
            self.L.debug("%s %s: %s", method, dispatch.selector, error)
            raise error

        if self.connection.raw:
            return json

        return Normalize(json, envelope)

    def _collect(self, dispatch:Dispatch, listener:Listener) -> Envelope:
        status = headers = error = None
        body = []

        for event in dispatch:
            if listener is not None:
                getattr(listener, HANDLERS[type(event)])(*event)

            if isinstance(event, Response):
                status, headers = event
            elif isinstance(event, Data):
                body.append(event.chunk)
            elif isinstance(event, Failure):
                error = event.error

        if error is not None:
            raise error

        return Envelope(status, headers, b''.join(body))

    # SERVER API

    def databases(self) -> list:
        """
        The names of all databases.
        """
        return self.request('GET', '/_all_dbs')

    def info(self) -> dict:
        """
        The welcome message and version of the server.
        """
        return self.request('GET', '/')

    def config(self, section:str=None) -> dict:
        """
        The server configuration, or just one *section* of it.
        """
        return self.request('GET', '/_config/' + (section or ''))

    def stats(self) -> dict:
        """
        The server statistics.
        """
        return self.request('GET', '/_stats')

    def activeTasks(self) -> list:
        """
        The list of tasks running on the server.
        """
        return self.request('GET', '/_active_tasks')

    def uuids(self, count:int=None) -> list:
        """
        A list of *count* UUIDs generated by the server (or just one).
        """
        return self.request('GET', '/_uuids',
                            {'count': count} if count else None)

    def replicate(self, options:dict) -> dict:
        """
        Trigger a replication, e.g., with the options
        ``{'source': 'db', 'target': 'http://example.com/db'}``.
        """
        return self.request('POST', '/_replicate', body=options)

