"""
.. py:module:: .test_response
   :synopsis: Unit tests for the response normalizer.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)
"""
from unittest.mock import Mock, call

import pytest

from settee.network import Envelope, Headers, HTTPError, ResourceConflict, \
        ResourceNotFound, ServerError
from settee.response import ArrayResult, ChangesResult, Document, \
        Normalize, RowsResult, UuidsResult

ENVELOPE = Envelope(200, Headers({'ETag': '"1-abc"'}), b'')


class TestNormalize:

    """result shapes"""

    def test_rows(self):
        result = Normalize({'total_rows': 1, 'offset': 0, 'rows': [
            {'id': 'a', 'key': 'k', 'value': 1}
        ]}, ENVELOPE)
        assert isinstance(result, RowsResult)
        assert [1] == result.toArray()
        assert 1 == len(result)
        assert 1 == result.total_rows
        assert 0 == result.offset

    def test_document(self):
        result = Normalize({'_id': 'x', '_rev': '1-abc', 'a': 1}, ENVELOPE)
        assert isinstance(result, Document)
        assert 'x' == result['id'] == result['_id'] == result.id
        assert '1-abc' == result['rev'] == result['_rev'] == result.rev
        assert 1 == result['a']

    def test_write_result(self):
        result = Normalize({'ok': True, 'id': 'x', 'rev': '1-abc'}, ENVELOPE)
        assert 'x' == result['_id'] == result.id
        assert '1-abc' == result['_rev'] == result.rev

    def test_error(self):
        envelope = Envelope(404, Headers(), b'')
        result = Normalize({'error': 'not_found', 'reason': 'missing'},
                           envelope)
        assert isinstance(result, ResourceNotFound)
        assert 404 == result.status
        assert 404 == result.headers['status']
        assert 'not_found' == result.error
        assert 'missing' == result.reason
        assert 'missing' == result['reason']

    @pytest.mark.parametrize('status,Error', [
        (409, ResourceConflict), (500, ServerError), (400, ServerError),
    ])
    def test_error_classes(self, status, Error):
        result = Normalize({'error': 'x'}, Envelope(status, Headers(), b''))
        assert type(result) is Error

    def test_error_without_status(self):
        assert type(Normalize({'error': 'x'})) is HTTPError

    def test_falsy_error_field(self):
        assert isinstance(Normalize({'error': None}, ENVELOPE), Document)

    def test_changes(self):
        result = Normalize({'results': [{'seq': 1, 'id': 'a'}],
                            'last_seq': 1}, ENVELOPE)
        assert isinstance(result, ChangesResult)
        assert 1 == result.last_seq
        assert 'a' == result[0]['id']

    def test_uuids(self):
        result = Normalize({'uuids': ['u1', 'u2']}, ENVELOPE)
        assert isinstance(result, UuidsResult)
        assert ['u1', 'u2'] == list(result)

    def test_array(self):
        result = Normalize(['_users', 'db'], ENVELOPE)
        assert isinstance(result, ArrayResult)
        assert ['_users', 'db'] == result
        assert 200 == result.status

    @pytest.mark.parametrize('json', ['text', 3, None, True])
    def test_scalars(self, json):
        assert json == Normalize(json, ENVELOPE)

    def test_headers(self):
        result = Normalize({}, ENVELOPE)
        assert 200 == result.status
        assert 200 == result.headers['status']
        assert '"1-abc"' == result.headers['etag']
        assert 'status' not in ENVELOPE.headers

    def test_without_envelope(self):
        result = Normalize({'a': 1})
        assert result.headers is None
        assert result.status is None

    def test_json(self):
        json = {'rows': [], 'total_rows': 0}
        assert json is Normalize(json, ENVELOPE).json


class TestDocument:

    def test_no_aliases_without_pair(self):
        doc = Document({'_id': 'x'})
        assert 'id' not in doc
        assert 'x' == doc.id
        assert doc.rev is None

        with pytest.raises(KeyError):
            doc['id']

    def test_aliases_are_read_only(self):
        doc = Document({'id': 'x', 'rev': '1-abc'})

        with pytest.raises(TypeError):
            doc['_rev'] = '2-def'

        with pytest.raises(TypeError):
            doc.update(_id='y')

    def test_stored_fields_are_writable(self):
        doc = Document({'_id': 'x', '_rev': '1-abc'})
        doc['_rev'] = '2-def'
        assert '2-def' == doc['rev']
        assert '2-def' == doc.get('rev')

    def test_aliases_are_not_copied(self):
        doc = Document({'_id': 'x', '_rev': '1-abc', 'a': 1})
        assert {'_id': 'x', '_rev': '1-abc', 'a': 1} == dict(doc)
        assert ['_id', '_rev', 'a'] == sorted(doc.keys())

    def test_id_without_rev(self):
        doc = Normalize({'ok': True, 'id': 'x'}, ENVELOPE)
        assert 'x' == doc.id == doc['id']
        assert doc.rev is None
        assert 'y' == Document({'id': 'x', 'rev': '1-a', '_id': 'y'}).id

    def test_attachments(self):
        assert {} == Document({}).attachments
        doc = Document({'_attachments': {'a.txt': {'length': 1}}})
        assert 1 == doc.attachments['a.txt']['length']


class TestRowsResult:

    def setup_method(self, method):
        self.rows = Normalize({'total_rows': 3, 'offset': 0, 'rows': [
            {'id': 'a', 'key': 'x', 'value': 1},
            {'id': 'b', 'key': 'y', 'value': None, 'doc': {'_id': 'b'}},
            {'id': 'c', 'key': 'z', 'value': 0},
        ]}, ENVELOPE)

    def test_to_array(self):
        assert [1, {'_id': 'b'}, 0] == self.rows.toArray()

    def test_for_each_value(self):
        fun = Mock()
        self.rows.forEach(lambda value: fun(value))
        assert [call(1), call({'_id': 'b'}), call(0)] == fun.call_args_list

    def test_for_each_row(self):
        calls = []
        self.rows.forEach(lambda key, value, id: calls.append((key, id)))
        assert [('x', 'a'), ('y', 'b'), ('z', 'c')] == calls

    def test_map(self):
        assert ['a', 'b', 'c'] == self.rows.map(lambda k, v, id: id)
        assert [2, None, 1] == self.rows.map(
            lambda v: v + 1 if isinstance(v, int) else None
        )

    def test_optional_parameters(self):
        assert [2, None, 0] == self.rows.map(
            lambda v, scale=2: v * scale if isinstance(v, int) else None
        )
        assert ['a', 'b', 'c'] == self.rows.map(lambda k, v, id=None: id)

    def test_headers_field(self):
        rows = Normalize({'rows': [], 'headers': ['a', 'b']}, ENVELOPE)
        assert ['a', 'b'] == rows.meta['headers']
        assert 200 == rows.headers['status']

    def test_metadata_is_read_only(self):
        with pytest.raises(AttributeError):
            self.rows.total_rows = 5

        with pytest.raises(TypeError):
            self.rows.meta['total_rows'] = 5

    def test_missing_metadata(self):
        with pytest.raises(AttributeError):
            self.rows.update_seq
