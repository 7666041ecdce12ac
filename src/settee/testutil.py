"""
.. py:module:: testutil
   :synopsis: A scripted fake server for the test cases.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

A :class:`.FakeTransport` replaces the connection factory of a
:class:`.network.Pool`; it answers each attempt at a request to a host with
the next outcome of that host's script, repeating the last outcome forever:

* a :class:`ConnectionRefusedError` is raised when connecting,
* any other exception is raised when awaiting the response,
* a :class:`.FakeResponse` is returned as the response.
"""
from collections import namedtuple
import errno
from http import client

from settee import serializer
from settee.network import Headers, Pool

Attempt = namedtuple("Attempt", "host method selector headers body")
"""
A recorded attempt; *method*, *selector*, *headers*, and *body* are ``None``
if the connection was refused.
"""


def Refused() -> ConnectionRefusedError:
    return ConnectionRefusedError(errno.ECONNREFUSED, 'Connection refused')


def Reset() -> ConnectionResetError:
    return ConnectionResetError(errno.ECONNRESET, 'Connection reset by peer')


def BrokenPipe() -> BrokenPipeError:
    return BrokenPipeError(errno.EPIPE, 'Broken pipe')


class FakeResponse:
    """
    A stand-in for :class:`http.client.HTTPResponse`.

    The *body* is served in chunks of *chunk_size* bytes; if an *error* is
    given, it is raised after the last chunk.
    """

    def __init__(self, status:int=200, headers:dict=None, body:bytes=b'',
                 chunk_size:int=None, error:Exception=None,
                 will_close:bool=False):
        if isinstance(body, str):
            body = body.encode('utf-8')

        self.params = dict(status=status, headers=headers, body=body,
                           chunk_size=chunk_size, error=error,
                           will_close=will_close)
        self.status = status
        self.reason = client.responses.get(status, '')
        self.headers = dict(headers or {})
        self.error = error
        self.will_close = will_close
        self.closed = False
        size = chunk_size or max(len(body), 1)
        self.chunks = [body[i:i + size] for i in range(0, len(body), size)]

    def copy(self) -> 'FakeResponse':
        return FakeResponse(**self.params)

    def getheaders(self) -> [(str, str)]:
        return list(self.headers.items())

    def read1(self, amt:int=-1) -> bytes:
        if self.chunks:
            return self.chunks.pop(0)

        if self.error is not None:
            error, self.error = self.error, None
            raise error

        return b''

    def close(self):
        self.closed = True


def JsonResponse(json:object, status:int=200, headers:dict=None,
                 **kwds) -> FakeResponse:
    """
    A :class:`.FakeResponse` with a JSON body.
    """
    all_headers = {'Content-Type': 'application/json'}
    all_headers.update(headers or {})
    return FakeResponse(status, all_headers, serializer.Encode(json), **kwds)


class FakeConnection:
    """
    A stand-in for :class:`http.client.HTTPConnection` that records requests.
    """

    def __init__(self, transport:'FakeTransport', host:str):
        self.transport = transport
        self.host = host
        self.sock = object()
        self.request = None

    def putrequest(self, method:str, selector:str, skip_host:bool=False,
                   skip_accept_encoding:bool=False):
        self.request = dict(method=method, selector=selector,
                            headers=Headers(), body=[])

    def putheader(self, header:str, value:str):
        self.request['headers'][header] = value

    def endheaders(self, message_body:bytes=None):
        if message_body is not None:
            self.request['body'].append(message_body)

    def send(self, data:bytes):
        self.request['body'].append(data)

    def getresponse(self) -> FakeResponse:
        request = self.request
        self.transport.attempts.append(Attempt(
            self.host, request['method'], request['selector'],
            request['headers'], b''.join(request['body'])
        ))
        outcome = self.transport.next(self.host)

        if isinstance(outcome, BaseException):
            raise outcome

        return outcome

    def close(self):
        self.sock = None


class FakeTransport:
    """
    A connection factory for a :class:`.network.Pool` serving scripted
    outcomes by host name.
    """

    def __init__(self, scripts:{str:list}):
        self.scripts = {host: list(script) for host, script in scripts.items()}
        self.attempts = []
        self.connections = 0

    def __call__(self, config) -> FakeConnection:
        script = self.scripts[config.host]

        if isinstance(script[0], ConnectionRefusedError):
            self.attempts.append(Attempt(config.host, None, None, None, None))
            raise self.next(config.host)

        self.connections += 1
        return FakeConnection(self, config.host)

    def next(self, host:str) -> object:
        script = self.scripts[host]
        outcome = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(outcome, FakeResponse):
            outcome = outcome.copy()

        return outcome

    def pool(self) -> Pool:
        """
        Return a new :class:`.network.Pool` using this transport.
        """
        return Pool(connect=self)

    def hosts(self) -> [str]:
        """
        The host name of each attempt, in order.
        """
        return [a.host for a in self.attempts]
