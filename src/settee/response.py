"""
.. py:module:: response
   :synopsis: Normalization of parsed CouchDB responses.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

:func:`.Normalize` turns the parsed JSON of a response into one of a closed
set of result types:

* :class:`.RowsResult` for view results (JSON objects with ``rows``),
* :class:`.ChangesResult` for changes feeds (``results`` and ``last_seq``),
* :class:`.UuidsResult` for UUID lists (``uuids``),
* :class:`.ArrayResult` for any other JSON array, and
* :class:`.Document` for any other JSON object;

or, if the JSON has an ``error`` field, a :class:`.network.HTTPError`.

>>> rows = Normalize({'total_rows': 2, 'offset': 0, 'rows': [
...     {'id': 'a', 'key': 'x', 'value': 1},
...     {'id': 'b', 'key': 'y', 'value': 2}]})
>>> rows.toArray()
[1, 2]
>>> rows.total_rows
2
>>> rows.map(lambda key, value, id: (id, key))
[('a', 'x'), ('b', 'y')]
"""
from inspect import Parameter, signature
from types import MappingProxyType

from settee.network import Envelope, Headers, HTTPError

__all__ = ['Normalize', 'Result', 'Document', 'RowsResult', 'ChangesResult',
           'UuidsResult', 'ArrayResult']


def Normalize(json:object, envelope:Envelope=None) -> object:
    """
    Shape the parsed *json* of a response, attaching the response status and
    headers from the *envelope*, if any.

    Error payloads are *returned* as :class:`.network.HTTPError` instances,
    not raised. Scalar JSON values are returned unchanged.
    """
    headers = None

    if envelope is not None:
        headers = Headers(envelope.headers or {})
        headers['status'] = envelope.status

    if isinstance(json, dict):
        if json.get('error'):
            status = None if envelope is None else envelope.status
            return HTTPError.FromJson(json, status, headers)
        elif isinstance(json.get('rows'), list):
            return RowsResult(json['rows'], json, headers)
        elif isinstance(json.get('results'), list):
            return ChangesResult(json['results'], json, headers)
        elif isinstance(json.get('uuids'), list):
            return UuidsResult(json['uuids'], json, headers)
        else:
            return Document(json, headers)
    elif isinstance(json, list):
        return ArrayResult(json, None, headers)
    else:
        return json


def RowValue(row:object) -> object:
    """
    The value of a view *row*: its ``doc``, else its ``value``, else the row
    itself.

    >>> RowValue({'key': 'k', 'value': None, 'doc': {'_id': 'a'}})
    {'_id': 'a'}
    >>> RowValue({'key': 'k', 'value': 0})
    0
    >>> RowValue({'key': 'k'})
    {'key': 'k'}
    """
    if isinstance(row, dict):
        for name in ('doc', 'value'):
            if row.get(name) is not None:
                return row[name]

    return row


def Arity(fun) -> int:
    """
    The number of required positional parameters *fun* declares (1 if that
    cannot be determined).

    >>> Arity(lambda value: value)
    1
    >>> Arity(lambda key, value, id: value)
    3
    >>> Arity(lambda value, scale=2: value * scale)
    1
    """
    try:
        params = signature(fun).parameters.values()
    except (TypeError, ValueError):
        return 1

    kinds = (Parameter.POSITIONAL_ONLY, Parameter.POSITIONAL_OR_KEYWORD)
    return sum(1 for p in params
               if p.kind in kinds and p.default is Parameter.empty)


class Result:
    """
    Response metadata shared by all normalized results.
    """

    _headers = None
    _json = None

    def _attach(self, json:object, headers:Headers):
        self._json = json
        self._headers = headers

    @property
    def headers(self) -> Headers:
        """
        The response headers, including the ``status``, or ``None``.
        """
        return self._headers

    @property
    def status(self) -> int:
        """
        The HTTP status code of the response or ``None``.
        """
        return None if self._headers is None else self._headers['status']

    @property
    def json(self) -> object:
        """
        The original, parsed JSON this result was shaped from.
        """
        return self._json


class Document(dict, Result):
    """
    Representation of a document (or any other JSON object) in a response.

    This is basically just a (shallow) copy of the JSON object with the two
    additional properties `id` and `rev`. If the object has either the
    ``id`` and ``rev`` or the ``_id`` and ``_rev`` fields, the other pair is
    available as read-only aliases:

    >>> doc = Document({'_id': 'x', '_rev': '1-abc'})
    >>> doc['id'], doc['rev'], doc.id, doc.rev
    ('x', '1-abc', 'x', '1-abc')
    >>> doc['_id'] = 'y'
    >>> doc['id']
    'y'
    >>> doc['id'] = 'z'
    Traceback (most recent call last):
        ...
    TypeError: 'id' is a read-only alias of '_id'
    """

    PAIRS = (('id', 'rev'), ('_id', '_rev'))

    def __init__(self, json:dict=None, headers:Headers=None):
        dict.__init__(self, json or {})
        self._attach(json, headers)

    def __repr__(self) -> str:
        return '<{} {}@{}>'.format(type(self).__name__, self.id, self.rev)

    def _aliases(self) -> dict:
        # {alias: source} for the pair that is not stored
        for stored, derived in (Document.PAIRS, Document.PAIRS[::-1]):
            if all(dict.get(self, name) for name in stored):
                return {d: s for d, s in zip(derived, stored)
                        if not dict.__contains__(self, d)}

        return {}

    def __missing__(self, key:str) -> object:
        aliases = self._aliases()

        if key in aliases:
            return dict.__getitem__(self, aliases[key])

        raise KeyError(key)

    def __contains__(self, key:str) -> bool:
        return dict.__contains__(self, key) or key in self._aliases()

    def __setitem__(self, key:str, value:object):
        aliases = self._aliases()

        if key in aliases:
            raise TypeError("'{}' is a read-only alias of '{}'".format(
                key, aliases[key]
            ))

        dict.__setitem__(self, key, value)

    def get(self, key:str, default:object=None) -> object:
        try:
            return self[key]
        except KeyError:
            return default

    def setdefault(self, key:str, default:object=None) -> object:
        if key not in self:
            self[key] = default

        return self[key]

    def update(self, *args, **kwds):
        for other in args + (kwds,):
            items = other.items() if hasattr(other, 'items') else other

            for k, v in items:
                self[k] = v

    @property
    def id(self) -> str:
        """
        The document ID or ``None``.
        """
        return self.get('_id', dict.get(self, 'id'))

    @property
    def rev(self) -> str:
        """
        The document revision or ``None``.
        """
        return self.get('_rev', dict.get(self, 'rev'))

    @property
    def attachments(self) -> dict:
        """
        Any attachments the document has, as a dictionary of file names
        pointing to dictionaries describing the file; or an empty dictionary.
        """
        return self.get('_attachments', {})


class ListResult(list, Result):
    """
    A result shaped as a list; any *meta* fields are available as read-only
    attributes.
    """

    def __init__(self, items:list=(), json:object=None, headers:Headers=None,
                 meta:dict=None):
        list.__init__(self, items)
        self._attach(json, headers)
        object.__setattr__(self, '_meta', MappingProxyType(dict(meta or {})))

    def __repr__(self) -> str:
        return '<{} {}>'.format(type(self).__name__, list.__repr__(self))

    def __getattr__(self, name:str) -> object:
        meta = self.__dict__.get('_meta', {})

        if name in meta:
            return meta[name]

        raise AttributeError("'{}' object has no attribute '{}'".format(
            type(self).__name__, name
        ))

    def __setattr__(self, name:str, value:object):
        if name in self.__dict__.get('_meta', {}):
            raise AttributeError("'{}' is read-only metadata".format(name))

        object.__setattr__(self, name, value)

    @property
    def meta(self) -> MappingProxyType:
        """
        A read-only mapping of the metadata fields.
        """
        return self._meta


class RowsResult(ListResult):
    """
    The rows of a view result.

    All fields of the JSON object (such as ``total_rows`` and ``offset``) are
    available as read-only attributes and in :attr:`.meta`, even a field
    called ``headers``, which would collide with the response
    :attr:`.headers`.
    """

    def __init__(self, rows:list=(), json:dict=None, headers:Headers=None):
        ListResult.__init__(self, rows, json, headers, json)

    def forEach(self, fun):
        """
        Call *fun* for each row, in order.

        If *fun* requires a single parameter, it is called with the value of
        the row (see :func:`.RowValue`); otherwise, it is called with the
        ``key``, the value, and the ``id`` of the row.
        """
        single = Arity(fun) == 1

        for row in self:
            value = RowValue(row)

            if single:
                fun(value)
            else:
                fun(Field(row, 'key'), value, Field(row, 'id'))

    def map(self, fun) -> list:
        """
        Collect the return values of calling *fun* as in :meth:`.forEach`.
        """
        results = []

        if Arity(fun) == 1:
            self.forEach(lambda value: results.append(fun(value)))
        else:
            self.forEach(lambda key, value, id:
                         results.append(fun(key, value, id)))

        return results

    def toArray(self) -> list:
        """
        The list of row values (see :func:`.RowValue`).
        """
        return self.map(lambda value: value)


def Field(row:object, name:str) -> object:
    return row.get(name) if isinstance(row, dict) else None


class ChangesResult(ListResult):
    """
    The change entries of a changes feed; :attr:`.last_seq` is the sequence
    marker of the last change.
    """

    def __init__(self, results:list=(), json:dict=None, headers:Headers=None):
        ListResult.__init__(self, results, json, headers,
                            {'last_seq': (json or {}).get('last_seq')})


class UuidsResult(ListResult):
    """
    A list of UUID strings.
    """

    def __init__(self, uuids:list=(), json:dict=None, headers:Headers=None):
        ListResult.__init__(self, uuids, json, headers)


class ArrayResult(ListResult):
    """
    Any other JSON array, e.g., the list of all databases.
    """
