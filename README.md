# infrahooks

Building blocks for services that sit between GitHub and your own
infrastructure:

- a **webhook trampoline** (`infrahooks.trampoline`) that verifies GitHub
  webhook signatures and forwards each delivery as a CloudEvent,
- a small **CloudEvent model** (`infrahooks.cloudevents`),
- a **CloudEvent recorder** (`infrahooks.recorder`) that writes received
  events to disk,
- a **bot framework** (`infrahooks.bot`, `infrahooks.handlers`) that
  dispatches CloudEvents to typed handlers,
- a **GitHub client** (`infrahooks.github`) with label, comment, artifact,
  log, content and search helpers,
- a **check-run builder** (`infrahooks.check`) that keeps output inside
  GitHub's size limit,
- a **secondary rate-limit waiter** (`infrahooks.ratelimit`) for `requests`
  sessions,
- typed **event records** (`infrahooks.schemas`) with JSON `decode` and
  `encode`.

## Installation

```
pip install infrahooks
```

For running the test suite:

```
pip install "infrahooks[test]"
pytest
```

## Webhook trampoline

`infrahooks.trampoline.Server` is a WSGI application; `Server.handle(headers,
body, host)` does the same work without WSGI and returns a `Response`. It
checks the `X-Hub-Signature-256` (or `X-Hub-Signature`) header against every
configured secret (an empty secret accepts any signature), filters by webhook
ID, "requested only" webhooks and organisation, and sends a CloudEvent of
type `dev.chainguard.github.<event>` through the client you give it. A client
signals a failed delivery by raising `infrahooks.cloudevents.DeliveryError`;
the send is retried a few times before the request answers 500.

Secrets are read from every environment variable whose name starts with
`WEBHOOK_SECRET`:

```python
import os

from infrahooks.secrets import load_from_env
from infrahooks.trampoline import Server, ServerOptions

options = ServerOptions(secrets=load_from_env(os.environ))
app = Server(client, options)   # client: any object with send(event)
```

Payload helpers are available on their own:

```python
from infrahooks.trampoline import (
    PayloadInfo,
    extract_pull_request_info,
    is_pull_request_merged,
)

info = PayloadInfo.from_payload(b'{"action": "closed", "number": 7, '
                                b'"repository": {"full_name": "org/repo"}, '
                                b'"pull_request": {"merged": true}}')
extract_pull_request_info("pull_request", info)   # "org/repo#7"
is_pull_request_merged("pull_request", info)      # True
```

## Check runs

```python
from infrahooks.check import Builder, Conclusion

b = Builder("lint", head_sha)
b.writef("found %d issues", 3)
b.summary = "Lint results"
b.conclusion = Conclusion.SUCCESS

create = b.check_run_create()   # status "completed" once a conclusion is set
update = b.check_run_update()
```

Output text is capped at 65536 bytes of UTF-8; when it overflows, it is cut
and a truncation notice is appended. An empty summary defaults to the name.

## Bots

```python
from infrahooks.bot import Bot, serve
from infrahooks.handlers import PullRequestHandler


def on_pull_request(context, event):
    ...


bot = Bot("my-bot", [PullRequestHandler(on_pull_request)])
serve(bot, 8080)
```

Registering two handlers for the same event type raises `ValueError`. A
handler receives a context mapping and the `body` of the event data. Inside a
handler, `attribute_from_context(context, key)` returns the CloudEvent
extension of that name, or `None`; the context also holds the event type,
subject and all extensions under `ce-type`, `ce-subject` and
`ce-attributes`.

## GitHub client

```python
from infrahooks.github import GitHubClient, StaticTokenSource

client = GitHubClient("my-org", "my-repo", StaticTokenSource("token"))
client.repo_url()        # "https://github.com/my-org/my-repo.git"
client.add_label(pr, "needs-review")
client.set_comment(pr, "my-bot", "All checks passed.")
client.close()           # revokes the token
```

Pull requests and workflow runs are passed as the mappings GitHub returns.
Failures raise `GitHubError`, or `RateLimitedError` with a `delay` when
GitHub reports a rate limit.

Pass `secondary_rate_limit_waiter=True` to route requests through
`infrahooks.ratelimit.SecondaryRateLimitWaiter`, which pauses on `403`/`429`
responses using `Retry-After`, `X-Ratelimit-Remaining`/`X-Ratelimit-Reset`,
or a default delay, then retries.

## Event records

```python
from infrahooks.schemas import PullRequestEvent, Wrapper, decode, encode

wrapped = decode(Wrapper[PullRequestEvent], raw_json)
wrapped.body.pull_request.number
encode(wrapped)   # back to JSON-compatible data
```

## Commands

Record incoming CloudEvents as files under `$LOG_PATH/<type>/<id>`,
listening on `$PORT` (default 8080); `--log-path` and `--port` override the
environment:

```
LOG_PATH=/var/log/events infrahooks-recorder
```

## What this package does not do

It does not generate BigQuery table schemas from the event records, and it
does not publish to or read from message queues; the trampoline only hands
events to the client object you supply.