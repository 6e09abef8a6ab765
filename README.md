# aperture

Building blocks for L402 (formerly LSAT) payment-gated authentication and a
small in-memory mailbox relay. It depends on nothing outside the standard
library.

The package has two parts:

- `aperture.l402`: macaroons with first-party caveats (`macaroon`), caveats
  and their checking (`caveat`, `satisfier`, `service`), L402 identifiers
  (`identifier`), tokens and their binary form (`token`), a file-backed token
  store (`store`), HTTP header encoding and decoding (`header`), and client
  and server interceptors (`client_interceptor`, `server_interceptor`).
- `aperture.hashmail`: mailbox streams (`mailbox`) and the server that holds
  them (`server`). Each mailbox has one reader and one writer at a time,
  messages are length-prefixed, writes are rate limited, and idle mailboxes
  are torn down after a configurable timeout.

## Caveats

A caveat is a `condition=value` pair attached to a macaroon.

```python
from aperture.l402.caveat import decode_caveat, encode_caveat

caveat = decode_caveat("expiration=1337")
assert encode_caveat(caveat) == "expiration=1337"

# Only the first "=" separates condition and value.
assert encode_caveat(decode_caveat("expiration=1337=")) == "expiration=1337="
```

A string without `=` raises `InvalidCaveatError`. `add_first_party_caveats`
attaches caveats to a `Macaroon`, and `has_caveat(mac, cond)` returns the
value of the last caveat with that condition, or `None`.

### Checking caveats

`verify_caveats(caveats, *satisfiers)` checks every caveat for which a
satisfier is given and ignores the rest, raising on the first failure. When
several caveats share a condition, each must be at least as strict as the one
before it, and the last one decides.

```python
from aperture.l402.caveat import Caveat, verify_caveats
from aperture.l402.satisfier import new_services_satisfier

caveats = [Caveat("services", "loop:0,pool:0"), Caveat("services", "loop:0")]
verify_caveats(caveats, new_services_satisfier("loop"))   # passes
```

`new_capabilities_satisfier(service, capability)` and
`new_timeout_satisfier(service, now)` cover the `<service>_capabilities` and
`<service>_valid_until` caveats; matching caveats are built with
`new_capabilities_caveat` and `new_timeout_caveat` from
`aperture.l402.service`, and a services caveat with `new_services_caveat`.

## Tokens and storage

`FileStore(store_dir)` keeps one current token in a directory: a pending
token (not yet paid) in `l402.token.pending`, a paid one in `l402.token`.
A pending token may be replaced by the paid token with the same payment hash;
any other replacement raises `TokenReplaceError`. An empty store raises
`NoTokenError`. Files left under the older `lsat.token` and
`lsat.token.pending` names are renamed when the store is opened, unless a
file under the new name already exists.

```python
import tempfile

from aperture.l402.store import FileStore, NoTokenError

store = FileStore(tempfile.mkdtemp())
try:
    current = store.current_token()
except NoTokenError:
    current = None
```

`serialize_token` and `deserialize_token` in `aperture.l402.token` give the
binary form written to those files.

## HTTP headers

`set_header(headers, mac, preimage)` sets the `Authorization` field to two
values, the legacy one with the LSAT scheme first and then the one with the
L402 scheme; each holds the base64 macaroon and the hex preimage separated by
a colon. `from_header(headers)` reads that form, or a hex macaroon carrying a
`preimage` caveat in the `Grpc-Metadata-Macaroon` or `Macaroon` field, and
returns the macaroon and preimage. It raises `AuthHeaderError` when nothing
usable is present.

## Interceptors

`ClientInterceptor` wraps an RPC call given as a callable. It attaches the
stored paid token, and when the call fails with a "payment required"
`StatusError` it reads the challenge from the response trailers, pays the
invoice through the Lightning client object it was given (which must offer
`network`, `pay_invoice` and `track_payment`) and repeats the call. Invoices
above `max_cost` satoshis are refused.

`ServerInterceptor` reads an L402 from a call's `Context` metadata and, when
one is found, passes the handler a context holding its `TokenID` under
`KEY_TOKEN_ID`.

## HashMail

```python
import threading

from aperture.hashmail.server import (
    CipherBox,
    CipherBoxAuth,
    CipherBoxDesc,
    HashMailConfig,
    HashMailServer,
)

server = HashMailServer(HashMailConfig(stale_timeout=-1))
desc = CipherBoxDesc(stream_id=b"\x01\x02\x03")
request = CipherBoxAuth(desc=desc, auth="placeholder")
server.new_cipher_box(request)

server.send_stream([CipherBox(desc=desc, msg=b"hello")])

received = []
done = threading.Event()

def deliver(box):
    received.append(box.msg)
    done.set()

server.recv_stream(desc, deliver, cancel=done)
assert received == [b"hello"]

server.del_cipher_box(request)
server.stop()
```

Creating a mailbox that already exists raises `AlreadyExistsError`; asking
for a read or write end that is already taken fails with "read stream
occupied" or "write stream occupied". A `stale_timeout` of zero selects one
hour; a negative one keeps idle mailboxes forever. `server.mailbox_count`
gives the number of active mailboxes and `server.activity` counts reads per
session.

## What it does not do

The package has no network layer and no command. The HashMail server and the
interceptors are plain Python objects called directly: there is no RPC or
HTTP listener, no reverse proxy, no invoice issuing and no connection to a
Lightning node. Mailboxes live only in memory. Callers supply the transport,
and for the client interceptor the Lightning client, themselves.

## Tests

The test suite uses pytest and lives in `tests/`:

```
pip install -e .[test]
pytest
```