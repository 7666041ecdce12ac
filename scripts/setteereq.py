#!/usr/bin/env python3
"""make a request to a CouchDB server and print the JSON result"""

# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import json
import logging
import os
import sys

from argparse import ArgumentParser
from settee import COUCHDB_URL, Client, ConnectionConfig, HTTPError, \
        TransportError
from settee.serializer import Decode

__author__ = 'Florian Leitner'
__version__ = '1.0'


def Option(value:str) -> (str, object):
    """Parse a NAME=VALUE query option; JSON values are decoded."""
    name, sep, value = value.partition('=')

    if not sep:
        raise ValueError('not a NAME=VALUE option')

    try:
        return name, Decode(value)
    except ValueError:
        return name, value


epilog = 'default server URL (COUCHDB_URL): {}'.format(COUCHDB_URL)
parser = ArgumentParser(
    usage='%(prog)s [options] PATH',
    description=__doc__, epilog=epilog,
    prog=os.path.basename(sys.argv[0])
)

parser.set_defaults(loglevel=logging.WARNING)
parser.add_argument(
    'path', metavar='PATH',
    help='the path of the resource, e.g. /_all_dbs'
)
parser.add_argument(
    '-u', '--url', metavar='URL', default=COUCHDB_URL,
    help='server URL, with optional credentials [%(default)s]'
)
parser.add_argument(
    '-a', '--alternate', metavar='URL', action='append', default=[],
    help='alternate server URL to fail over to (repeatable)'
)
parser.add_argument(
    '-X', '--method', metavar='METHOD', default='GET',
    help='HTTP request method [%(default)s]'
)
parser.add_argument(
    '-d', '--data', metavar='JSON',
    help='JSON request body; use "-" to read it from <STDIN>'
)
parser.add_argument(
    '-o', '--option', metavar='NAME=VALUE', type=Option, action='append',
    default=[], help='query option (repeatable)'
)
parser.add_argument(
    '-r', '--retry', metavar='N', type=int, default=1,
    help='retries on connection resets; negative for no limit [%(default)s]'
)
parser.add_argument(
    '-t', '--timeout', metavar='SECS', type=float,
    help='socket timeout [none]'
)
parser.add_argument('--version', action='version', version=__version__)
parser.add_argument(
    '-v', '--verbose', action='store_const', const=logging.INFO,
    dest='loglevel', help='INFO log level [WARN]'
)
parser.add_argument(
    '-q', '--quiet', action='store_const', const=logging.ERROR,
    dest='loglevel', help='ERROR log level [WARN]'
)
parser.add_argument(
    '--debug', action='store_const', const=logging.DEBUG,
    dest='loglevel', help='DEBUG log level [WARN]'
)

args = parser.parse_args()
logging.basicConfig(
    level=args.loglevel,
    format='%(asctime)s %(name)s %(levelname)s: %(message)s'
)

try:
    config = ConnectionConfig.FromUrl(args.url, alternates=args.alternate,
                                      retry=args.retry, timeout=args.timeout,
                                      raw=True)
except (TypeError, ValueError) as e:
    parser.error(str(e))

body = None

if args.data is not None:
    try:
        body = Decode(sys.stdin.read() if args.data == '-' else args.data)
    except ValueError as e:
        parser.error('invalid JSON body: {}'.format(e))

client = Client(config)

try:
    result = client.request(args.method, args.path, dict(args.option), body)
except HTTPError as e:
    print(json.dumps(e.json, indent=2, sort_keys=True))
    sys.exit(1)
except TransportError as e:
    logging.error('%s failed: %s', config.url, e)
    sys.exit(2)
except ValueError:
    logging.exception("unexpected response")
    sys.exit(1)
finally:
    client.close()

if args.method.upper() == 'HEAD':
    headers, status = result
    print(status)

    for header in sorted(headers.items()):
        print(': '.join(map(str, header)))
else:
    print(json.dumps(result, indent=2, sort_keys=True))
