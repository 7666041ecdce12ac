"""
.. py:module:: serializer
   :synopsis: JSON data serializer.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

Thin configuration layer over the json package in the standard library
with settings optimized for speed.

Functions are serialized as their source text, so view and design functions
can be embedded in design documents:

>>> Encode({'language': 'python', 'map': 'def fun(doc): yield None, doc'})
'{"language":"python","map":"def fun(doc): yield None, doc"}'
"""
from inspect import getsource
from json.decoder import JSONDecoder
from json.encoder import JSONEncoder
from textwrap import dedent
from types import FunctionType

__all__ = ['Decode', 'Encode', 'FunctionSource']


def FunctionSource(fun:FunctionType) -> str:
    """
    Return the dedented source text of the function *fun*, as sent to the
    server in place of the function object.
    """
    return dedent(getsource(fun).lstrip('\n\r')).rstrip('\n\r')


def DefaultSerializer(obj):
    """
    Serialization of objects the JSON encoder does not know: functions are
    serialized as their source text, sets as lists, and any object that has
    an `isoformat()` method (particularly date and time objects) as its ISO
    format string.
    """
    if isinstance(obj, FunctionType):
        return FunctionSource(obj)
    elif isinstance(obj, (set, frozenset)):
        return list(obj)
    elif hasattr(obj, 'isoformat'):
        return obj.isoformat()
    else:
        raise TypeError(repr(obj) + " is not JSON serializable")


# Pre-load encoder/decoder instances with the fastest possible performance and
# most compact encoding. The decoder default is pretty much it; for the
# encoder, the extra whitespaces have been eliminated and the circular
# reference check deactivated.
DECODER = JSONDecoder()

ENCODER = JSONEncoder(check_circular=False, separators=(',', ':'),
                      allow_nan=False, default=DefaultSerializer)


def Decode(string:str) -> object:
    """
    Decode a JSON *string* to a Python object.

    Contrary to :func:`.Encode`, it does not de-serialize date and time strings
    to `datetime` objects.

    :raise ValueError: If the *string* is not valid JSON.
    """
    return DECODER.decode(string)


def Encode(obj:object) -> str:
    """
    Encode basic Python objects as the most compact JSON strings.

    In particular, the encoder also iso-formats date and time objects
    according to `ISO 8601 <http://en.wikipedia.org/wiki/ISO_8601>`_ and
    replaces functions with their source code. Note that the circular
    reference check for lists and dictionaries has been deactivated.

    :raise ValueError: If *obj* contains NaN or infinite floats.
    """
    return ENCODER.encode(obj)
