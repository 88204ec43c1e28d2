# mcpkit

A small toolkit for JSON-RPC 2.0 peers, with two tool backends that are ready to use.

## What is inside

- `mcpkit.jsonrpc2.messages` holds the request, response and error types and their JSON wire
  form: `new_call`, `new_notification`, `new_response`, `encode_message`, `encode_indent`
  and `decode_message`. It also defines the standard error values (`ERR_PARSE`,
  `ERR_METHOD_NOT_FOUND` and the others), plus `NotHandledError` and `AsyncResponseError`.
- `mcpkit.jsonrpc2.frame` frames messages over byte streams:
  - `raw_framer()` sends bare JSON values.
  - `header_framer()` puts a `Content-Length` header in front of each message.
- `mcpkit.jsonrpc2.net` provides listeners and dialers:
  - TCP and Unix sockets: `net_listener`, `net_dialer`.
  - In-process pipes: `net_pipe_listener`.
- `mcpkit.jsonrpc2.call` holds `AsyncCall`, the handle on a pending outgoing call. It also
  holds `RequestContext`, `ConnectionOptions`, `BinderFunc` and `ConnectionConfig`.
- `mcpkit.jsonrpc2.conn` provides `Connection`, a two-way peer built with `new_connection`. It:
  - sends calls and notifications;
  - matches responses to calls;
  - passes incoming requests to an optional preempter, then to a handler that runs requests one at a time.
- `mcpkit.memory` is a knowledge graph of entities, relations and observations. The graph is
  kept in memory (`MemoryStore`) or in a JSON file (`FileStore`).
- `mcpkit.thinking` provides sequential-thinking sessions (`SequentialThinking`). Their steps
  can be revised, and a session can branch.
- `mcpkit.util` holds small helpers: `field_json_info`, `sorted_items`, `key_list`, `wrapf`.

The package has no dependencies outside the standard library.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## A JSON-RPC round trip

```python
import threading

from mcpkit.jsonrpc2.call import ConnectionConfig
from mcpkit.jsonrpc2.conn import new_connection
from mcpkit.jsonrpc2.frame import header_framer
from mcpkit.jsonrpc2.messages import HandlerFunc, NotHandledError
from mcpkit.jsonrpc2.net import net_pipe_listener


def handle(ctx, req):
    if req.method == "ping":
        return {"msg": "pong"}
    raise NotHandledError()


listener = net_pipe_listener()
accepted = {}
acceptor = threading.Thread(target=lambda: accepted.update(stream=listener.accept()))
acceptor.start()
client_stream = listener.dial()
acceptor.join()
server_stream = accepted["stream"]

framer = header_framer()
server = new_connection(ConnectionConfig(
    reader=framer.reader(server_stream),
    writer=framer.writer(server_stream),
    closer=server_stream,
    bind=lambda conn: HandlerFunc(handle),
))
client = new_connection(ConnectionConfig(
    reader=framer.reader(client_stream),
    writer=framer.writer(client_stream),
    closer=client_stream,
    bind=lambda conn: None,
))

print(client.call("ping", {"msg": "ting"}).result(timeout=5))

client.close()
server.wait()
listener.close()
```

A handler signals that it does not know a method by raising `NotHandledError`. The peer then
receives a "method not found" error. A handler that will answer later raises
`AsyncResponseError`, and calls `Connection.respond` once its answer is ready. If `bind`
returns `None`, the connection answers every call with "method not found".

## Knowledge graph

```python
from mcpkit.memory import Entity, KnowledgeBase, MemoryStore, Relation

kb = KnowledgeBase(MemoryStore())
kb.create_entities([Entity("Alice", "Person", ["Likes coffee"])])
kb.create_entities([Entity("Bob", "Person", ["Likes tea"])])
kb.create_relations([Relation("Alice", "Bob", "friend")])
print(kb.search_nodes("coffee"))
```

`add_observations` raises `EntityNotFoundError` when it names an entity that is not in the
graph. A `FileStore` that cannot be written raises `StoreError`.

## Sequential thinking

```python
from mcpkit.thinking import (
    ContinueThinkingArgs,
    ReviewThinkingArgs,
    SequentialThinking,
    StartThinkingArgs,
)

thinking = SequentialThinking()
thinking.start_thinking(StartThinkingArgs(problem="Sort a list", session_id="s1"))
thinking.continue_thinking(ContinueThinkingArgs(session_id="s1", thought="Pick a pivot"))
print(thinking.review_thinking(ReviewThinkingArgs(session_id="s1")))
print(thinking.thinking_history("thinking://sessions")["text"])
```

## What the package does not do

- It has no server loop that accepts connections from a listener and sets up a `Connection`
  for each one. You accept streams yourself and call `new_connection` for each, as shown above.
- It has no helper that dials and binds in a single step.
- It has no listener that shuts down after a period with no connections.
- The knowledge-graph and thinking backends are plain Python APIs. Nothing in the package
  registers them as tools or serves them over JSON-RPC.
- There is no command-line program.