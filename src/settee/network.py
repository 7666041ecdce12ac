"""
.. py:module:: network
   :synopsis: CouchDB HTTP communication layer.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)


This module provides the actual HTTP connectivity: a :class:`.Dispatcher`
sends one logical request, retrying it on broken pipes and connection resets
and failing over to alternate servers when a server refuses connections. The
outcome is delivered as an ordered stream of events, a :class:`.Dispatch`:

* :class:`.Response` (status and headers), then one :class:`.Data` event
  per body chunk, then :class:`.End`; or
* :class:`.Failure` and then :class:`.End`, possibly after the response
  events if the body could not be read completely;
* :class:`.Retry` and :class:`.Alternate` events may precede either, one for
  each retry and each switch of server.

Connections are kept alive and reused from a :class:`.Pool` that limits the
number of connections in use per server.
"""
from base64 import b64encode
from collections import defaultdict, namedtuple
from collections.abc import Mapping
import errno
from http import client
import logging
from os import strerror
import re
import socket
import ssl
from threading import BoundedSemaphore, Lock
from urllib.parse import urlencode

__all__ = ['HTTPError', 'PreconditionFailed', 'ResourceNotFound',
           'ResourceConflict', 'ServerError', 'Unauthorized',
           'TransportError', 'DecodeError',
           'Headers', 'Envelope', 'Pool', 'Listener', 'Dispatch',
           'Dispatcher',
           'Response', 'Data', 'End', 'Failure', 'Retry', 'Alternate']

USER_AGENT = "settee/1.0"
"""
The User-Agent header to use in requests.
"""

RETRYABLE_ERRORS = frozenset(['EPIPE', 'ECONNRESET'])
"""
The codes of the transport errors that should immediately trigger another
attempt at the HTTP request on the same server.
"""

FAILOVER_ERRORS = frozenset(['ECONNREFUSED'])
"""
The codes of the transport errors that should trigger an attempt at the next
alternate server.
"""

CHUNK_SIZE = 0x2000
# byte-size of chunks read off response bodies and body streams

Envelope = namedtuple("Envelope", "status headers body")
"""
A named tuple representing the raw result of a request.

.. attribute:: status

    An `int` representing the response status value.

.. attribute:: headers

    The response :class:`.Headers`.

.. attribute:: body

    The response data, as a `bytes` object.
"""

Response = namedtuple("Response", "status headers")
"""
Event: the response status and :class:`.Headers` have arrived.
"""

Data = namedtuple("Data", "chunk")
"""
Event: a chunk (`bytes`) of the response body has arrived.
"""

End = namedtuple("End", "")
"""
Event: the dispatch is complete; always the last event.
"""

Failure = namedtuple("Failure", "error")
"""
Event: the dispatch failed with a terminal :class:`.TransportError`.
"""

Retry = namedtuple("Retry", "error remaining")
"""
Event: another attempt is made after the *error*; *remaining* is the retry
budget left for the (new) server.
"""

Alternate = namedtuple("Alternate", "server config")
"""
Event: the next attempt goes to alternate *server* (an index into the
alternates of the primary configuration), configured by *config*.
"""


class TransportError(Exception):
    """
    Exception raised when a request could not be completed, because of a
    socket or HTTP protocol failure.

    .. attribute:: code

        The name of the error, e.g. ``'ECONNRESET'``, ``'EPIPE'``, or
        ``'ECONNREFUSED'``, or the exception class name for failures that have
        no error number.

    .. attribute:: errno

        The error number, or ``None``.
    """

    CODES = (
        (ConnectionRefusedError, 'ECONNREFUSED'),
        (ConnectionResetError, 'ECONNRESET'),
        (BrokenPipeError, 'EPIPE'),
        (ConnectionAbortedError, 'ECONNABORTED'),
        (socket.timeout, 'ETIMEDOUT'),
    )

    def __init__(self, code:str, message:str=None, errno:int=None):
        Exception.__init__(self, message or code)
        self.code = code
        self.errno = errno

    @classmethod
    def FromException(cls, error:Exception) -> 'TransportError':
        """
        Normalize any socket or HTTP protocol *error* to a transport error.

        A connection that was closed without any response becomes an
        ``ECONNRESET`` error, to simplify retry logic:

        >>> TransportError.FromException(client.RemoteDisconnected('gone')).code
        'ECONNRESET'
        >>> TransportError.FromException(client.BadStatusLine("''")).code
        'ECONNRESET'
        >>> TransportError.FromException(BrokenPipeError(errno.EPIPE, 'x')).code
        'EPIPE'
        >>> TransportError.FromException(client.IncompleteRead(b'')).code
        'IncompleteRead'
        """
        if isinstance(error, cls):
            return error

        if isinstance(error, client.RemoteDisconnected) or \
           isinstance(error, client.BadStatusLine) and \
           error.line in ('', "''"):
            # http raises a BadStatusLine when it cannot read the status
            # line saying, "Presumably, the server closed the connection
            # before sending a valid response."
            return cls('ECONNRESET', 'ECONNRESET, connection reset by peer',
                       errno.ECONNRESET)

        if isinstance(error, ssl.SSLError):
            # carries an SSL library error number, not an errno
            return cls(type(error).__name__, str(error))

        if isinstance(error, OSError):
            code = errno.errorcode.get(error.errno)

            if code is None:
                for klass, name in cls.CODES:
                    if isinstance(error, klass):
                        code = name
                        break

            if code is not None:
                number = getattr(errno, code, None)
                reason = error.strerror or (strerror(number) if number
                                            else str(error))
                return cls(code, '{}, {}'.format(code, reason), number)

        return cls(type(error).__name__, str(error) or type(error).__name__)


class DecodeError(ValueError):
    """
    Exception raised when a response body is not valid JSON.

    The *status* and *headers* of the response are attached, the body is not.
    """

    def __init__(self, message:str, status:int=None, headers:dict=None):
        ValueError.__init__(self, message)
        self.status = status
        self.headers = headers


class HTTPError(client.HTTPException):
    """
    Base class for errors reported by the server as a JSON body with an
    ``error`` field (an "error result").

    .. attribute:: json

        The original (parsed) JSON payload.

    .. attribute:: headers

        The response :class:`.Headers`, including the response ``status``.

    .. attribute:: status

        The HTTP status code or ``None``.
    """

    STATUS = None

    def __init__(self, json:dict, status:int=None, headers:dict=None):
        message = "{}: {}".format(json.get('error'), json.get('reason'))
        client.HTTPException.__init__(self, message)
        self.json = json
        self.status = status
        self.headers = headers

    def __getitem__(self, key:str) -> object:
        return self.json[key]

    @property
    def error(self) -> str:
        return self.json.get('error')

    @property
    def reason(self) -> str:
        return self.json.get('reason')

    @staticmethod
    def FromJson(json:dict, status:int=None,
                 headers:dict=None) -> 'HTTPError':
        """
        Create the :class:`.HTTPError` (sub-) class instance matching the
        *status* of the response.

        >>> type(HTTPError.FromJson({'error': 'not_found'}, 404)).__name__
        'ResourceNotFound'
        >>> type(HTTPError.FromJson({'error': 'oops'}, 500)).__name__
        'ServerError'
        """
        if status is None:
            return HTTPError(json, status, headers)

        for Error in (Unauthorized, ResourceNotFound, ResourceConflict,
                      PreconditionFailed):
            if Error.STATUS == status:
                return Error(json, status, headers)

        return ServerError(json, status, headers)


class PreconditionFailed(HTTPError):
    """
    Exception for a 412 HTTP error received in response to a request.
    """

    STATUS = 412


class ResourceConflict(HTTPError):
    """
    Exception for a 409 HTTP error received in response to a request.

    Usually the case when trying to update a document with mismatching
    ``_rev`` values (eg., because another client updated the same document
    a moment earlier).
    """

    STATUS = 409


class ResourceNotFound(HTTPError):
    """
    Exception for a 404 HTTP error received in response to a request.
    """

    STATUS = 404


class Unauthorized(HTTPError):
    """
    Exception for when the server requires authentication credentials
    but either none are provided, or they are incorrect (HTTP 401).
    """

    STATUS = 401


class ServerError(HTTPError):
    """
    Exception for any other error reported by the server.
    """


class Headers(dict):
    """
    A simple dict implementation that ensures header names (the dict's keys)
    are always stored as lower-case, but usually returned in their correct
    capitalized format from an iterator or methods that return keys.

    >>> h = Headers({'content-type': 'application/json'}, etag='"1-a"')
    >>> h['Content-Type']
    'application/json'
    >>> sorted(h.keys())
    ['Content-Type', 'ETag']
    """

    def __init__(self, *args, **kwds):
        dict.__init__(self)
        self.update(*args, **kwds)

    @staticmethod
    def _format(key:str) -> str:
        items = list(part.capitalize() for part in key.split('-'))

        for name in ('Md5', 'Te', 'P3p', 'Www'):
            if name in items:
                items[items.index(name)] = name.upper()

        if 'Etag' in items:
            items[items.index('Etag')] = 'ETag'

        return "-".join(items)

    def __getitem__(self, key:str) -> object:
        return dict.__getitem__(self, key.lower())

    def __setitem__(self, key:str, value:object):
        return dict.__setitem__(self, key.lower(), value)

    def __contains__(self, key:str) -> bool:
        return dict.__contains__(self, key.lower())

    def __delitem__(self, key:str):
        return dict.__delitem__(self, key.lower())

    def __iter__(self) -> iter:
        return self.keys()

    def copy(self) -> 'Headers':
        return Headers(self)

    def get(self, key:str, default:object=None) -> object:
        return dict.get(self, key.lower(), default)

    def items(self) -> iter([(str, object)]):
        for k, v in dict.items(self):
            yield Headers._format(k), v

    def keys(self) -> iter:
        for k in dict.keys(self):
            yield Headers._format(k)

    def pop(self, key:str, *default) -> object:
        return dict.pop(self, key.lower(), *default)

    def setdefault(self, key:str, default:object=None) -> object:
        return dict.setdefault(self, key.lower(), default)

    def update(self, *args, **kwds):
        for other in args + (kwds,):
            items = other.items() if hasattr(other, 'items') else other

            for k, v in items:
                self[k] = v


def NormalizePath(path:str) -> str:
    """
    Strip any accidentally embedded protocol, collapse duplicate slashes,
    and ensure the *path* starts with a slash.

    >>> NormalizePath('db//_design/app')
    '/db/_design/app'
    >>> NormalizePath('http://db/doc')
    '/db/doc'
    >>> NormalizePath('')
    '/'
    """
    if not path:
        return '/'

    path = re.sub(r'https?://', '', path)
    path = re.sub(r'/{2,}', '/', path)
    return path if path.startswith('/') else '/' + path


def EncodeQuery(query:{str:object}) -> str:
    """
    Encode the *query* parameters, with booleans as ``true`` or ``false``.

    >>> EncodeQuery({'include_docs': True, 'limit': 10, 'skip': None})
    'include_docs=true&limit=10'
    >>> EncodeQuery({'keys': ['a', 'b']})
    'keys=a&keys=b'
    """
    params = []

    for name, value in query.items():
        if type(value) in (list, tuple):
            params.extend((name, Stringify(i)) for i in value if i is not None)
        elif value is not None:
            params.append((name, Stringify(value)))

    return urlencode(params)


def Stringify(value:object) -> object:
    if value is True: return 'true'
    elif value is False: return 'false'
    else: return value


def BasicAuth(username:str, password:str) -> str:
    """
    Return the ``Authorization`` header value for basic authentication.

    >>> BasicAuth('anonymous', 'xyzzy')
    'Basic YW5vbnltb3VzOnh5enp5'
    """
    token = '{}:{}'.format(username, password).encode('utf-8')
    return 'Basic ' + b64encode(token).decode('ascii')


def AssembleHeaders(config, headers:dict=None) -> Headers:
    """
    Assemble the headers of one attempt at a request to the server described
    by *config*: the ``Host`` header, the configured headers, the basic
    authentication header, and finally the request *headers*; later values
    replace earlier ones.
    """
    all_headers = Headers({'User-Agent': USER_AGENT, 'Host': config.host})
    all_headers.update(config.headers)

    if config.auth:
        all_headers['Authorization'] = BasicAuth(*config.auth)

    if headers:
        all_headers.update(headers)

    return all_headers


def Connect(config) -> client.HTTPConnection:
    """
    Open a new connection to the server described by *config*.
    """
    if config.secure:
        Connection = client.HTTPSConnection
    else:
        Connection = client.HTTPConnection

    if config.timeout is None:
        conn = Connection(config.host, config.port)
    else:
        conn = Connection(config.host, config.port, timeout=config.timeout)

    conn.connect()
    return conn


class Pool:
    """
    A pool of keep-alive connections, by server.

    At most *max_sockets* (see :class:`.ConnectionConfig`) connections to
    one server can be in use at the same time; :meth:`.acquire` blocks until
    a connection is released if that limit has been reached. Released
    connections stay open and are re-used for later requests.
    """

    def __init__(self, connect=Connect):
        """
        :param connect: A callable that opens a new connection for a given
                        configuration (defaults to :func:`.Connect`).
        """
        self.connect = connect
        self.idle = defaultdict(list) # open connections by server
        self.slots = {} # semaphores by server
        self.lock = Lock()

    @staticmethod
    def _key(config) -> tuple:
        return config.scheme, config.host, config.port

    def _slots(self, config) -> BoundedSemaphore:
        self.lock.acquire()

        try:
            key = Pool._key(config)

            if key not in self.slots:
                self.slots[key] = BoundedSemaphore(config.max_sockets)

            return self.slots[key]
        finally:
            self.lock.release()

    def acquire(self, config) -> client.HTTPConnection:
        """
        Return an open connection to the server described by *config*.

        :raise OSError: If a new connection cannot be established.
        """
        slots = self._slots(config)
        slots.acquire()
        conn = None

        try:
            self.lock.acquire()

            try:
                conns = self.idle[Pool._key(config)]

                while conns:
                    conn = conns.pop()
                    if conn.sock: break
                    else: conn.close()
            finally:
                self.lock.release()

            if not (conn and conn.sock):
                conn = self.connect(config)
        except BaseException:
            slots.release()
            raise

        return conn

    def release(self, config, conn:client.HTTPConnection, reuse:bool=True):
        """
        Return a connection acquired for *config* to the pool; if it should
        not be re-used, it is closed instead.
        """
        try:
            if reuse and conn.sock:
                self.lock.acquire()

                try:
                    self.idle[Pool._key(config)].append(conn)
                finally:
                    self.lock.release()
            else:
                conn.close()
        finally:
            self._slots(config).release()

    def clear(self):
        """
        Close all idle connections.
        """
        self.lock.acquire()

        try:
            for conns in self.idle.values():
                while conns:
                    conns.pop().close()
        finally:
            self.lock.release()


class Listener:
    """
    Receiver of the events of a :class:`.Dispatch`; override the methods
    for the events of interest.
    """

    def onResponse(self, status:int, headers:Headers):
        pass

    def onData(self, chunk:bytes):
        pass

    def onEnd(self):
        pass

    def onError(self, error:TransportError):
        pass

    def onRetry(self, error:TransportError, remaining:int):
        pass

    def onAlternate(self, server:int, config):
        pass


HANDLERS = {
    Response: 'onResponse',
    Data: 'onData',
    End: 'onEnd',
    Failure: 'onError',
    Retry: 'onRetry',
    Alternate: 'onAlternate',
}


class Dispatch:
    """
    One logical request, including all of its retries and failover hops.

    Iterating a dispatch sends the request and yields its events; a dispatch
    can be consumed only once.
    """

    def __init__(self, dispatcher:'Dispatcher', method:str, selector:str,
                 body:object=None, headers:dict=None):
        self.dispatcher = dispatcher
        self.method = method
        self.selector = selector
        self.headers = Headers(headers) if headers else Headers()
        self.headers['Connection'] = 'keep-alive'
        self.L = logging.getLogger("Request({})".format(method))
        self.__consumed = False
        self._sent = False
        self._start = None

        if isinstance(body, str):
            body = body.encode('utf-8')
        elif isinstance(body, (bytearray, memoryview)):
            body = bytes(body)

        if body is None or isinstance(body, bytes):
            self.chunked = False

            if body is not None:
                self.headers.setdefault('Content-Length', str(len(body)))
        elif hasattr(body, 'read') or hasattr(body, '__iter__') and \
                not isinstance(body, Mapping):
            self.chunked = True
            self.headers['Transfer-Encoding'] = 'chunked'
            self.headers.pop('Content-Length', None)

            if hasattr(body, 'seek') and hasattr(body, 'tell'):
                try:
                    self._start = body.tell()
                except OSError:
                    pass # unseekable stream
        else:
            raise TypeError('cannot send a {} body'.format(
                type(body).__name__
            ))

        self.body = body

    def __repr__(self) -> str:
        return '<{} {} {}>'.format(type(self).__name__, self.method,
                                   self.selector)

    def __iter__(self) -> iter:
        if self.__consumed:
            raise RuntimeError("dispatch already consumed")

        self.__consumed = True
        return self._events()

    def notify(self, listener:Listener):
        """
        Consume the dispatch, calling the *listener*'s method for each event
        in order.
        """
        for event in self:
            getattr(listener, HANDLERS[type(event)])(*event)

    def _events(self):
        primary = config = self.dispatcher.config
        server = -1
        retries = config.retry

        while True:
            try:
                conn, response = self._attempt(config)
            except TransportError as error:
                if error.code in RETRYABLE_ERRORS and retries and \
                   self._rewind():
                    if retries > 0: retries -= 1
                    self.L.info("%s; retrying %s%s (retries left: %s)", error,
                                config.url, self.selector,
                                retries if retries >= 0 else 'any')
                    yield Retry(error, retries)
                    continue

                if error.code in FAILOVER_ERRORS and \
                   server + 1 < len(primary.alternates) and self._rewind():
                    server += 1
                    config = primary.alternates[server]
                    retries = config.retry
                    self.L.info("%s; failing over to %s%s", error, config.url,
                                self.selector)
                    yield Retry(error, retries)
                    yield Alternate(server, config)
                    continue

                self.L.error("%s (%s%s)", error, config.url, self.selector)
                yield Failure(error)
                yield End()
                return

            yield from self._receive(config, conn, response)
            return

    def _attempt(self, config) -> (client.HTTPConnection, client.HTTPResponse):
        pool = self.dispatcher.pool

        try:
            conn = pool.acquire(config)
        except (OSError, client.HTTPException) as e:
            raise TransportError.FromException(e) from e

        try:
            self._send(conn, config)
            return conn, conn.getresponse()
        except (OSError, client.HTTPException) as e:
            pool.release(config, conn, reuse=False)
            raise TransportError.FromException(e) from e
        except BaseException:
            pool.release(config, conn, reuse=False)
            raise

    def _send(self, conn:client.HTTPConnection, config):
        headers = AssembleHeaders(config, self.headers)
        self.L.debug("%s%s body=%s\n%s", config.url, self.selector,
                     self.body is not None,
                     '\n'.join(': '.join(h) for h in headers.items()
                               if h[0] != 'Authorization'))
        conn.putrequest(self.method, self.selector,
                        skip_host=True, skip_accept_encoding=True)

        for header, value in headers.items():
            conn.putheader(header, value)

        if self.chunked:
            conn.endheaders()

            for chunk in self._chunks():
                self._sent = True
                conn.send(b'%x\r\n' % len(chunk) + chunk + b'\r\n')

            conn.send(b'0\r\n\r\n')
        else:
            conn.endheaders(self.body)

    def _chunks(self) -> iter([bytes]):
        if hasattr(self.body, 'read'):
            chunks = iter(lambda: self.body.read(CHUNK_SIZE), self.body.read(0))
        else:
            chunks = self.body

        for chunk in chunks:
            if isinstance(chunk, str):
                chunk = chunk.encode('utf-8')

            if chunk:
                yield chunk

    def _rewind(self) -> bool:
        # a partially sent stream can only be sent again if it can be rewound
        if not self._sent:
            return True

        if self._start is None:
            return False

        self.body.seek(self._start)
        self._sent = False
        return True

    def _receive(self, config, conn:client.HTTPConnection,
                 response:client.HTTPResponse):
        L = logging.getLogger("Response({})".format(self.method))
        status = response.status
        headers = Headers(response.getheaders())
        L.debug("%s HTTP %s (%s)\n%s", self.selector,
                client.responses.get(status, '?'), status,
                '\n'.join(': '.join(h) for h in headers.items()))
        reuse = False

        try:
            yield Response(status, headers)

            while True:
                chunk = response.read1(CHUNK_SIZE)
                if not chunk: break
                yield Data(chunk)

            reuse = not response.will_close
        except (OSError, client.HTTPException) as e:
            error = TransportError.FromException(e)
            L.error("%s while reading the body (%s%s)", error, config.url,
                    self.selector)
            yield Failure(error)
        finally:
            response.close()
            self.dispatcher.pool.release(config, conn, reuse)

        yield End()


class Dispatcher:
    """
    Sends requests to the server of a :class:`.ConnectionConfig`, retrying
    and failing over to its alternate servers as configured.
    """

    def __init__(self, config, pool:Pool=None):
        """
        :param config: The :class:`.ConnectionConfig` to use.
        :param pool: The connection :class:`.Pool` to (re-)use.
        """
        self.config = config
        self.pool = Pool() if pool is None else pool

    def dispatch(self, method:str, path:str, query:dict=None,
                 body:object=None, headers:dict=None) -> Dispatch:
        """
        Prepare a request; it is sent when the returned :class:`.Dispatch`
        is consumed.

        :param method: The HTTP method (GET, PUT, POST, DELETE, HEAD, COPY).
        :param path: The path to the resource.
        :param query: Optional query parameters.
        :param body: The body: `bytes`, `str` (encoded as UTF-8), a file-like
                     object, or an iterable of chunks; the last two are
                     streamed using chunked transfer encoding.
        :param headers: Optional headers for the request.
        """
        selector = NormalizePath(path)

        if query:
            encoded = EncodeQuery(query)
            if encoded: selector = '{}?{}'.format(selector, encoded)

        return Dispatch(self, method.upper(), selector, body, headers)
