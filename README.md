# nodeservices

Building blocks for a scan node that runs detection bots, collects their
findings and publishes them in batches. The package uses only the standard
library.

## What is in it

- **Service lifecycle** (`nodeservices.service`): an abstract `Service` with
  `start`, `stop` and `name`; a `MainContext` carrying an execution ID that
  `init_main_context` arranges to be cancelled on SIGHUP, SIGINT, SIGTERM and
  SIGQUIT. `start_services(ctx, services)` starts each service in turn, waits
  for the context to be cancelled and then stops them all. If the context is
  cancelled before every service has started it raises `ContextCancelled`; if
  `trigger_exit(delay)` was called it raises `ExitTriggered` after stopping
  the services. `is_graceful_shutdown()` tells whether SIGTERM ended the run,
  and `container_main(name, get_services, config)` wraps the whole sequence,
  exiting with code 77 on a triggered exit.
- **Messages and shared types** (`nodeservices.models`): the `Subject` enum of
  message subjects, agent configuration (`AgentConfig`, `AlertConfig`,
  `CombinerBotSubscription`), metric types and result types. `MessageClient`
  is an in-process publish/subscribe client that also records every published
  message in its `published` list.
- **Rate limiting** (`nodeservices.ratelimit`): `RateLimiter(rate, burst)` is a
  per-client token bucket; `cleanup(max_idle)` forgets idle clients.
  `nodeservices.rpcerrors.too_many_requests_response(body)` returns the HTTP
  status 429 and the JSON-RPC error body (code -32000) for a request over its
  limit, echoing the request's `id`.
- **Metrics aggregation** (`nodeservices.metrics`): `MetricsAggregator` groups
  agent metric values into time buckets and, on `force_flush` or `try_flush`
  (once a bucket interval has passed since the last flush), reduces each
  metric to count, average, max, p95 and sum.
- **Alert batches** (`nodeservices.batch`): `AlertBatch.append_alert` sorts
  each `NotifyRequest` into block, transaction, combination or private results
  and records which agents processed which blocks, transactions and
  subscriptions. `decode_hex_uint64` parses 0x-prefixed block numbers.
- **Publishing** (`nodeservices.publisher`): `Publisher` queues notifications
  (`notify`), builds batches (`prepare_batch`), decides whether a batch is
  worth sending (`should_skip_publishing`) and hands it to a `BatchSender`
  (`publish_batch`), attaching flushed metrics and the latest block input.
- **Agent registry** (`nodeservices.registry`): `RegistryService` polls a
  `RegistryStore` and publishes the agent list on
  `Subject.AGENTS_VERSIONS_LATEST` when it changes.
- **Bot pool** (`nodeservices.agent`, `nodeservices.agent_pool`): `Agent`
  buffers up to 2000 requests of each kind for one bot and processes them
  through an `AgentClient`, truncating responses to 10 findings. `AgentPool`
  reacts to version and status messages, dials and attaches running bots, and
  fans evaluation requests out to the ready ones, reporting dropped requests
  as metrics.
- **Consecutive errors** (`nodeservices.error_counter`): `ErrorCounter`.
- **Local alert log** (`nodeservices.webhook_log`): `WebhookLogger` writes each
  payload as one JSON line.

## Examples

```python
from nodeservices.ratelimit import RateLimiter

limiter = RateLimiter(0.5, 1)          # one token every two seconds, burst of one
limiter.exceeds_limit("client-1")      # False
limiter.exceeds_limit("client-1")      # True, until a token is replenished
```

```python
from nodeservices.error_counter import ErrorCounter

counter = ErrorCounter(3, lambda err: isinstance(err, TimeoutError))
counter.too_many_errs(TimeoutError())  # False
counter.too_many_errs(None)            # False, and the count starts again
```

```python
from nodeservices.webhook_log import WebhookLogger

with WebhookLogger.open("logs", "local-alerts.jsonl") as alert_log:
    alert_log.send_alerts({"alerts": [], "metrics": []})
```

```python
from nodeservices.service import Service, init_main_context, start_services


class Ticker(Service):
    def start(self):
        ...

    def stop(self):
        ...

    def name(self):
        return "ticker"


ctx = init_main_context()
start_services(ctx, [Ticker()])
```

## What it does not do

- It has no command-line entry point and runs no HTTP or RPC server; the
  rate limiter and the JSON-RPC error builder are to be used from your own
  server.
- Messaging is in-process only: `MessageClient` does not talk to a broker.
- Nothing is signed, stored or sent over the network. Batches go to whatever
  `BatchSender` you provide, bots are reached through your own `AgentClient`,
  and the agent list comes from your own `RegistryStore`.
- No containers are started or inspected.

## Tests

The test suite uses pytest; install the `test` extra to get it.