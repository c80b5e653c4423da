# firecore

`firecore` is a library of the pieces needed to run and manage a blockchain
reader node from Python:

* a superviser that starts the node binary and hands every line it prints to
  log plugins;
* log plugins that keep the last lines, echo them to the console or forward
  them to a `logging.Logger`;
* a mind-reader plugin that turns node output into blocks (through a console
  reader you provide) and archives them as one-block files;
* an operator that serialises start, maintenance, reload, backup and restore
  commands, with an HTTP control interface;
* bootstrappers that fill an empty node data directory from a `tar.zst`
  archive or by running a script.

It needs Python 3.11 or later and depends only on `zstandard`.

## Modules

| Module | What it provides |
| --- | --- |
| `firecore.block` | `Block`, `BlockRef`, `ChainBlock`, `BlockEnvelope`, `encode_block`, `ProductionState`, `ProductionEvent`, `StartOption` |
| `firecore.rpc` | `Clients`, `with_clients`, `NoMoreClientsError`, `AllClientsFailedError` |
| `firecore.storage` | `search_block_num`, `block_num_iter`, `last_merged_block_num` |
| `firecore.system` | `augment_stack_size_limit` (raises the soft stack limit of the process) |
| `firecore.backup` | `BackupModule`, `RestorableBackupModule`, `BackupSchedule`, `parse_duration`, `new_backup_schedule`, `parse_kv_config_string`, `parse_backup_configs`, `select_backup_module`, `select_restore_module` |
| `firecore.logplugin` | `Shutter`, `LogPlugin`, `LineRingBuffer`, `FunctionLogPlugin`, `KeepLastLinesLogPlugin`, `ToConsoleLogPlugin`, `ToLoggerLogPlugin`, `is_instrumentation_line` |
| `firecore.monitor` | `MetricsAndReadinessManager`, `HeadTimeDrift`, `HeadBlockNumber`, `AppReadiness` |
| `firecore.superviser` | `Superviser`, `GenericSuperviser`, `format_log_lines`, `new_node_log_plugin` |
| `firecore.reader_node` | `reader_node_variables_values`, `is_bootstrapped`, `TarballNodeBootstrapper` |
| `firecore.uploader` | `LocalStore`, `FileUploader`, `Archiver`, `block_file_name`, `serialize_block` |
| `firecore.mindreader` | `MindReaderPlugin`, `ConsoleReader`, `validate_one_block_suffix` |
| `firecore.operator` | `Operator`, `Command`, `OperatorOptions`, `Bootstrapper`, `CleanExit` |
| `firecore.http_server` | `OperatorHTTPServer` |
| `firecore.bootstrap` | `BashNodeBootstrapper`, `default_reader_node_bootstrapper`, `variable_name_to_env_name`, `default_bootstrap_data_url_flag_description` |

## Examples

Fail over between clients until one succeeds:

```python
from firecore.rpc import Clients, with_clients

clients = Clients()
clients.add("primary")
clients.add("secondary")

def call(client):
    if client == "primary":
        raise ConnectionError("primary is down")
    return f"served by {client}"

with_clients(clients, call)
# "served by secondary"
```

When every client fails, `AllClientsFailedError` is raised; its `errors`
attribute holds each failure, ending with a `NoMoreClientsError`.

Find the highest merged-blocks file (block numbers are multiples of 100),
never going below the start block:

```python
from firecore.storage import search_block_num

search_block_num(1_690_600, lambda num: num <= 208_853_300)
# 208853300
```

`last_merged_block_num(start, file_exists)` does the same with a callable
that is given ten-digit, zero-padded file names, and falls back to the start
block if that callable raises.

Parse a backup configuration string:

```python
from firecore.backup import parse_kv_config_string

parse_kv_config_string("type=pitreos store=file:///var/backups")
# {"type": "pitreos", "store": "file:///var/backups"}
```

A configuration without a non-empty `type`, or with a field that is not a
single `key=value`, raises `ValueError`. `parse_backup_configs` turns such
strings into backup modules (through factories keyed by `type`) and, when
`freq-blocks` or `freq-time` is given, into `BackupSchedule`s.

Keep the last lines printed by the node, leaving out instrumentation lines
(those starting with `FIRE ` or `DMLOG `) unless asked to keep them:

```python
from firecore.logplugin import KeepLastLinesLogPlugin

plugin = KeepLastLinesLogPlugin(3, False)
for line in ["a", "b", "DMLOG x", "c", "d"]:
    plugin.log_line(line)

plugin.last_lines()
# ["b", "c", "d"]
```

Supervise a node binary and send its output to plugins:

```python
from firecore.logplugin import FunctionLogPlugin
from firecore.superviser import Superviser

superviser = Superviser("sh", ["-c", "echo first; echo second"])
superviser.register_log_plugin(FunctionLogPlugin(print))
superviser.start()
superviser.wait_stopped(5)
superviser.last_exit_code()
# 0
```

## Operator and HTTP interface

`Operator(superviser, chain_readiness, options)` runs commands one at a time.
`Operator.launch(http_server)` queues a first `start` and then processes
commands until a `CleanExit`, an irrecoverable failure, or the node stopping
on its own. Commands are `start`, `resume`, `maintenance`, `reload`,
`safely_reload`, `backup`, `restore`, `safely_pause_production` and
`safely_resume_production`; `Operator.submit(command, wait=True)` blocks until
the command completes and raises its error.

`OperatorHTTPServer(operator, "127.0.0.1:8080")` serves `GET /v1/ping`,
`/healthz`, `/v1/healthz`, `/v1/server_id`, `/v1/is_running`,
`/v1/start_command`, `/v1/list_backups` and `POST /v1/maintenance`,
`/v1/resume`, `/v1/backup`, `/v1/restore`, `/v1/reload`, `/v1/safely_reload`,
`/v1/safely_pause_production`, `/v1/safely_resume_production`. Adding
`sync=true` waits for the command's outcome. `handle(method, path, params)`
serves a request without a socket.

## Bootstrapping

When the reader node data directory holds no file, a bootstrap data URL
(the `reader-node-bootstrap-data-url` entry of the flags mapping given to the
factory from `default_reader_node_bootstrapper`) fills it:

* a URL ending in `tar.zst` or `tar.zstd` (a local path, a `file://` URL or an
  `http(s)://` URL) is decompressed and extracted into the data directory;
* a `bash:///path/to/script?...` URL runs the script with the resolved node
  variables in `READER_NODE_*` environment variables. The query accepts
  `arg`, `env`, `env_<key>`, `cwd`, `interpreter` and `interpreter_arg`.

`default_bootstrap_data_url_flag_description()` returns the full description
of these options.

## What this package does not do

* It has no command-line program; everything is used as a library.
* It has no block streaming or relaying service: blocks read by
  `MindReaderPlugin` go to the archiver, to an optional `on_block_written`
  callback and to any object you pass with a `push_block` method.
* Stores are local directories only (plain paths or `file://` URLs); there is
  no cloud storage backend. One-block files use this package's own framing
  with a JSON body, written by `serialize_block`.
* Metrics (`HeadTimeDrift`, `HeadBlockNumber`, `AppReadiness`) are kept in
  memory and are not exported to any monitoring system.
* Reading blocks from node output needs a `ConsoleReader` you supply; no
  chain-specific reader is included.

## Tests

The tests live in `tests/` and use pytest; the `test` extra lists what they
need:

```
pip install -e .[test]
pytest
```