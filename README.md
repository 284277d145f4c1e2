# itsjustintv

Core pieces of a bridge that receives Twitch EventSub notifications and
forwards them to your own webhooks:

- **`itsjustintv.config`**: the configuration model (dataclasses), loaded
  from a TOML file with environment variable overrides and validated on load.
- **`itsjustintv.watcher`**: `ConfigWatcher` watches the configuration file
  and hands a freshly loaded, validated configuration to your callback when
  it changes.
- **`itsjustintv.cache`**: `CacheManager`, a deduplication cache with a
  time-to-live, persisted to a JSON file.
- **`itsjustintv.output`**: `OutputWriter`, a bounded JSON log of every
  payload that was sent, with success and failure counts.
- **`itsjustintv.retry`**: `RetryManager`, a retry queue with exponential
  backoff for webhook deliveries that failed, persisted across restarts.

Requires Python 3.11 or later. Install with `pip install .`, and with
`pip install .[test]` to run the tests with `pytest`.

## What this package does not do

It is a library of components, not a running service. It has no HTTP server
to receive EventSub notifications, no Twitch API client, no code that sends
webhooks over the network, and no command-line program. Delivery is left to
you: `RetryManager` calls whatever object you pass as its `Dispatcher`, and
user-ID lookup in `resolve_streamer_user_ids` calls whatever
`TwitchUserResolver` you supply.

## Configuration

A minimal `config.toml`:

```toml
[server]
listen_addr = "0.0.0.0"
port = 8080

[twitch]
client_id = "example-client-id"
client_secret = "secret"
webhook_secret = "secret"

[retry]
max_attempts = 3
initial_delay = "1s"
max_delay = "5m"
backoff_factor = 2.0

[output]
enabled = true
file_path = "data/output.json"
max_lines = 1000

[global_webhook]
enabled = true
url = "https://example.com/webhook"

[streamers.example]
login = "examplestreamer"
target_webhook_url = "https://example.com/streamer-hook"
```

The tables are `server` (with `server.tls`), `twitch`, `streamers`, `retry`,
`output`, `telemetry` and `global_webhook`; `default_config()` returns a
`Config` holding every default. Unknown keys are ignored; a value of the
wrong type raises `ConfigError`.

Durations are strings such as `"500ms"`, `"1s"`, `"1h30m"` (units `ns`, `us`,
`ms`, `s`, `m`, `h`); a bare integer is taken as nanoseconds. The same
parser is available as `parse_duration`.

These environment variables override the file:

| Variable | Setting |
| --- | --- |
| `ITSJUSTINTV_SERVER_LISTEN_ADDR` | `server.listen_addr` |
| `ITSJUSTINTV_SERVER_PORT` | `server.port` |
| `ITSJUSTINTV_TWITCH_CLIENT_ID` | `twitch.client_id` |
| `ITSJUSTINTV_TWITCH_CLIENT_SECRET` | `twitch.client_secret` |
| `ITSJUSTINTV_TWITCH_WEBHOOK_SECRET` | `twitch.webhook_secret` |
| `ITSJUSTINTV_TLS_ENABLED` | `server.tls.enabled` (only the value `true`) |

A missing configuration file is not an error: defaults and environment
variables are used. `load_config` validates the result and raises
`ConfigError` whose message names the offending setting, for example
`twitch.client_id is required` or `global_webhook.url must be a valid URL`.
Validation (also available as `Config.validate()` and `validate_config`)
creates the directories of `twitch.token_file`, `retry.state_file` and
`output.file_path`, the `server.tls.cert_dir` directory and
`data/image_cache`, relative to the working directory.

```python
from itsjustintv.config import load_config, ConfigError

try:
    config = load_config("config.toml")
except ConfigError as exc:
    print(f"bad configuration: {exc}")

print(config.config_path)
```

`is_valid_url` accepts only URLs starting with `http://` or `https://`.

Streamers configured with only a `login` can have their `user_id` filled in
by any object with a `get_user_info_by_login_for_config(login)` method that
returns something with `get_id()` and `get_login()`:

```python
from itsjustintv.config import resolve_streamer_user_ids

resolve_streamer_user_ids(config, resolver)
```

Streamers that already have a `user_id`, or have no `login`, are left alone.
Each resolved streamer is reported on standard output; a failed lookup raises
`ConfigError`.

## Reloading on change

```python
from itsjustintv.watcher import ConfigWatcher

def apply(new_config):
    writer.update_config(new_config)

watcher = ConfigWatcher("config.toml", apply)
watcher.start()
...
watcher.stop()
```

`start()` does nothing when the path is empty and raises `ConfigError` when
the file does not exist. Events on the file or its directory are debounced
(0.5 s by default, `watcher.debounce_time`), then `reload_config()` loads and
validates the file and calls your function. A configuration that fails to
load or validate, or that your function rejects by raising, is logged and not
applied; `reload_config()` returns `False` in that case. `watcher.config`
holds the last configuration that was applied, or `None`.

## Deduplication

```python
from datetime import datetime, timedelta, timezone
from itsjustintv.cache import CacheManager

cache = CacheManager("data/cache.json", timedelta(hours=2))
cache.start()  # loads unexpired entries, starts cleanup every 10 minutes

key = cache.generate_event_key("12345", "event-1", datetime.now(timezone.utc))
if not cache.is_duplicate(key):
    cache.add_event(key, b"{}")

print(cache.size(), cache.stats())
cache.stop()  # writes the cache file
```

`generate_event_key` is the SHA-256 hex digest of
`"<streamer_id>:<event_id>:<unix seconds>"`. `is_duplicate` drops an expired
entry when it meets one; `cleanup()` removes all expired entries and returns
how many it removed. `stats()` returns `total_entries`, `active_entries`,
`expired_entries` and `ttl_seconds`.

## Output log

```python
from itsjustintv.output import OutputWriter

writer = OutputWriter(config)
writer.start()
writer.write_payload({"streamer_login": "examplestreamer"}, True, "")
print(writer.recent_payloads(10))
print(writer.stats())
writer.stop()
```

Every `write_payload` call saves the file at `output.file_path`; only the
newest `output.max_lines` entries are kept. `recent_payloads(limit)` returns
`OutputEntry` objects, all of them when `limit` is not positive. When
`output.enabled` is false, nothing is loaded, recorded or written.

## Retries

`RetryManager` takes a `Dispatcher`, any object whose `dispatch(request)`
returns a `DispatchResult`. A failed `DispatchRequest` is queued with
`add_request`, which increments its `attempt` and schedules its next try at
`initial_delay * backoff_factor ** (attempt - 1)`, capped at `max_delay`
(see `calculate_next_retry`).

After `start()`, every 30 seconds `process_ready_retries()` hands each due
request to the dispatcher in a background thread; a request that fails again
goes back into the queue, and requests whose `attempt` exceeds
`retry.max_attempts` are dropped. `queue_size()` reports the queue length.
The queue is saved to `retry.state_file` on `stop()` and loaded again on
`start()`. `update_config` switches a running manager to a new configuration,
as does `OutputWriter.update_config`.