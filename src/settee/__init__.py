"""
.. py:module:: settee
   :synopsis: A CouchDB client for Python 3000.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
"""

from settee.client import Client
from settee.config import COUCHDB_URL, ConnectionConfig, Credentials
from settee.network import DecodeError, Dispatcher, HTTPError, Listener, \
        Pool, PreconditionFailed, ResourceConflict, ResourceNotFound, \
        ServerError, TransportError, Unauthorized
from settee.response import ArrayResult, ChangesResult, Document, \
        Normalize, RowsResult, UuidsResult
