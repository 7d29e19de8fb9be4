# litefs

Tools for a node of a replicated SQLite cluster:

- `litefs.config` loads and checks the node's YAML configuration;
- `litefs.consul` elects a primary by holding a lock on a Consul key;
- `litefs.mount` parses the `mount` command's flags and validates its settings;
- `litefs.bench` puts insert or query load on a SQLite database;
- `litefs.duration` parses and formats durations such as `10s` or `1m30s`.

## Installation

```
pip install .
```

## Commands

### litefs

```
litefs version
litefs mount -config /etc/litefs.yml -- myapp --serve
```

`litefs version` prints the build description.

`litefs mount` reads its settings from the file given with `-config`. Without
that option it looks for `litefs.yml` in the current directory, then in your
home directory, and finally at `/etc/litefs.yml`; environment variables are
expanded in the file unless `-no-expand-env` is given. Anything after `--`
replaces the file's `exec` setting. The flags `-fuse.debug` and `-debug` turn
on the matching settings, and `-help` prints the usage text.

The settings are then validated: the FUSE and data directories must be set and
differ, `lease.type` must be `consul` or `static`, and a candidate node may
not have a `lease.databases` filter. If `LITEFS_CLOUD_TOKEN` is set, the backup
settings are filled in from it (and from `LITEFS_CLOUD_ENDPOINT`).

Next the `exec` commands run: each but the last runs to completion, and the
last is started in the background; commands marked `if-candidate` are skipped
on non-candidate nodes. The command then waits until that process exits or a
SIGINT or SIGTERM arrives, which is passed on to the process. The exit code is
that of the process. Errors in flags or settings exit with status 2; errors
while running exit with status 1 when `exit-on-error` is set.

### litefs-bench

```
litefs-bench -mode insert -iter 1000 /path/to/db
litefs-bench -mode query -iter-per-sec 50 /path/to/db
```

Options: `-mode` (`insert` or `query`, required), `-journal-mode`, `-seed`,
`-cache-size` (default -2000), `-iter` (0 runs until stopped),
`-max-row-size` (default 256), `-max-rows-per-iter` (default 10) and
`-iter-per-sec`. Throughput is logged once a second.

## Configuration

```python
from litefs.config import new_config, unmarshal_config

config = new_config()
with open("litefs.yml", "rb") as fh:
    unmarshal_config(config, fh.read(), expand_env=True)

print(config.fuse.dir, config.lease.type)
```

Unknown keys and values of the wrong type are rejected with `ConfigError`.
`exec` may be a single string or a list of `{cmd, if-candidate}` entries.

When `expand_env` is true, `$VAR` and `${VAR}` are replaced by environment
values. The braced form also accepts comparisons that expand to `true` or
`false`:

```python
from litefs.config import expand_env

expand_env("${ FLY_REGION == 'ord' }")
expand_env("${ PRIMARY_REGION == FLY_REGION }")
```

`parse_config_path(path, expand_env, config)` loads a file the way
`litefs mount` does and returns the path it read.

## Consul leasing

```python
from litefs.consul import Leaser, PrimaryExistsError

leaser = Leaser("http://localhost:8500", "litefs/primary", "node1", "http://node1:20202")
leaser.open()
try:
    lease = leaser.acquire()
except PrimaryExistsError:
    print(leaser.primary_info().hostname)
```

A path in the Consul URL becomes a key prefix, and a password in it is sent
as the Consul token. A `Lease` can be renewed with `renew()` (raising
`LeaseExpiredError` once the session is gone), released with `close()`, and
handed to another node with `handoff(node_id)`; the holder collects that
request with `wait_handoff(timeout)`. `cluster_id()` and `set_cluster_id()`
read and set a cluster ID that can be set only once.

## What this package does not do

`litefs mount` does not mount a FUSE file system, store or replicate
databases, serve an HTTP API or run a proxy; it loads and checks the
configuration and supervises the `exec` commands. There are no `export`,
`import` or `run` commands, and no backup client: the backup settings are
only read and checked.

## Development

```
pip install .[test]
pytest
```