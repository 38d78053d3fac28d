# modelpuller

`modelpuller` sits between a model mesh and a model runtime. When a model is
loaded it has the model's files pulled from storage into a local directory,
rewrites the load request so that it points at the local copy (and records the
model's size on disk), and then passes the request on to the runtime. When a
model is unloaded it asks the runtime to drop it and removes the local files.

Loads and unloads of the same model are handled strictly in the order they
were submitted, each model on a worker thread of its own, while different
models proceed independently.

The package has no third-party dependencies.

## Modules

| Module                  | Contents                                                           |
|-------------------------|--------------------------------------------------------------------|
| `modelpuller.config`    | `PullerConfiguration`, `PullerServerConfiguration`, `get_env_string`, `get_env_int`, `secure_join` |
| `modelpuller.dotpath`   | `apply_parameter_overrides`, `DotpathError`                        |
| `modelpuller.messages`  | request/response dataclasses, `StatusCode`, `RuntimeStatus`, `RpcError`, `status_code_of` |
| `modelpuller.puller`    | `Puller`, `ModelKeyInfo`, `PullCommand`, `RepositoryConfig`, `Target`, `PullError` |
| `modelpuller.modelstate`| `ModelStateManager`                                                |
| `modelpuller.server`    | `PullerServer`                                                     |

## Configuration

`from_env()` reads settings from the environment:

| Variable                | Default           | Read by                     |
|-------------------------|-------------------|-----------------------------|
| `ROOT_MODEL_DIR`        | `/models`         | `PullerConfiguration`       |
| `STORAGE_CONFIG_DIR`    | `/storage-config` | `PullerConfiguration`       |
| `PORT`                  | `8084`            | `PullerServerConfiguration` |
| `MODEL_SERVER_ENDPOINT` | `port:8085`       | `PullerServerConfiguration` |

`PORT` must be an integer; anything else raises `ValueError`.

```python
from modelpuller.config import PullerConfiguration, PullerServerConfiguration

puller_config = PullerConfiguration.from_env()
server_config = PullerServerConfiguration.from_env()
```

Both are dataclasses and can also be built directly, e.g.
`PullerConfiguration(root_model_dir="/tmp/models", storage_configuration_dir="/tmp/storage")`.

### Storage configurations

Each file in the storage configuration directory is a JSON object named by
its storage key, for example:

```json
{
  "type": "s3",
  "access_key_id": "placeholder",
  "secret_access_key": "secret",
  "endpoint_url": "https://storage.example.com",
  "region": "us-south",
  "bucket": "models"
}
```

`PullerConfiguration.get_storage_configuration(key)` returns it as a dict.
The key is joined to the directory with `secure_join`, so it cannot escape the
directory through `..` or symbolic links. A missing key raises
`FileNotFoundError`; a file that is not a JSON object raises `ValueError`. For
`s3` storage a legacy `default_bucket` is copied to `bucket` when no `bucket`
is given.

## Model keys

A load request's `model_key` is a JSON document, parsed by
`ModelKeyInfo.from_json` and written back by `ModelKeyInfo.to_json`. Its
fields are `model_type` (passed through as is), `bucket`, `disk_size_bytes`,
`schema_path`, `storage_key` and `storage_params`.

- If `storage_key` is given, that storage configuration must exist.
- Otherwise the configuration `default` is used, or `default_<type>` when
  `storage_params` has a `type`; if that is missing, the parameters alone are
  used.
- A top-level `bucket` replaces the configuration's `bucket` when the
  configuration has one (a deprecated form).
- `storage_params` then override configuration fields by dotted path.

The resulting configuration must have a string `type`.

Overrides are applied with `apply_parameter_overrides`, which changes the
dict in place and may only replace string values:

```python
from modelpuller.dotpath import apply_parameter_overrides

params = {"bucket": "models"}
apply_parameter_overrides(params, {"bucket": "other", "extra.region": "eu"})
# params == {"bucket": "other", "extra": {"region": "eu"}}
```

Overwriting an object or any other non-string value, or walking through
something that is not an object, raises `DotpathError`.

## Pulling

`Puller(config, pull_manager)` takes a `PullerConfiguration` (or `None` to
read it from the environment) and a pull manager: any object with a
`pull(command)` method that fetches the files described by a `PullCommand`:

- `command.repository_config.storage_type` and `.parameters` — the storage
  type and the merged storage configuration;
- `command.directory` — the model's local directory, `<root_model_dir>/<model_id>`;
- `command.targets` — `Target(remote_path, local_path)` entries.

```python
from modelpuller.puller import Puller

class LocalCopy:
    def pull(self, command):
        ...  # fetch each target into command.directory

puller = Puller(puller_config, LocalCopy())
```

`Puller.process_load_model_request(request)` pulls the model and changes the
request in place:

- `model_path` becomes the local path; the local name is the last element of
  the remote path, or `_model` when that is empty or a root;
- a `schema_path` in the model key is pulled too and rewritten to its local
  path (named `_schema.json` if its name clashes with the model's);
- `disk_size_bytes` is set to the size of the model on disk, following
  symbolic links;
- `storage_key`, `storage_params` and `bucket` are removed from the model key.

Failures raise `PullError`, an `RpcError` whose code is taken from the pull
manager's error where it carries one.

The puller also offers `model_disk_size(path)`, `cleanup_model(model_id)`
(a missing model is not an error), `clear_local_model_storage(exclude)` and
`list_models()` (sorted entry names in the model root).

## Serving

`PullerServer(puller, runtime_client, config=None)` takes a `Puller`, a client
for the model runtime and a `PullerServerConfiguration` (read from the
environment when omitted). The runtime client is any object with
`load_model`, `unload_model`, `predict_model_size`, `model_size` and
`runtime_status` methods, each taking and returning the dataclasses from
`modelpuller.messages`.

```python
from modelpuller.server import PullerServer
from modelpuller.messages import LoadModelRequest, UnloadModelRequest

server = PullerServer(puller, runtime_client, server_config)

response = server.load_model(
    LoadModelRequest(
        model_id="my-model",
        model_path="models/my-model",
        model_type="mt:tensorflow",
        model_key='{"storage_key": "myStorage"}',
    ),
    timeout=30,
)

server.unload_model(UnloadModelRequest(model_id="my-model"), timeout=30)
```

`load_model` and `unload_model` queue the request with a `ModelStateManager`
and wait for it. They raise `TimeoutError` if no answer arrives within
`timeout` seconds (the request still runs), and `RuntimeError` when 25
requests for the same model are already pending.

- Loading pulls the model, then calls the runtime; runtime failures are
  raised as `RpcError` with the runtime's status code.
- Unloading calls the runtime, tolerating `StatusCode.NOT_FOUND`, and then
  deletes the local files.
- `predict_model_size` and `model_size` are passed straight to the runtime.
- `runtime_status` returns the runtime's status; when it is
  `RuntimeStatus.READY` it first calls `unload_all`, which unloads and deletes
  every model under the model directory except names starting with `_`.
  Errors from this are raised.

Errors carry a `StatusCode` through `RpcError`; `status_code_of(error)`
finds the code of any exception, searching its chain of causes.

## What this package does not do

- It does not listen on a network port or speak gRPC itself: `PullerServer`
  is called directly, and `PullerServerConfiguration.port` and
  `model_server_endpoint` are only held, not used to open connections.
- It has no storage back ends: fetching files from S3, GCS, Azure, HTTP or
  volumes is up to the pull manager you pass to `Puller`.
- It provides no command-line program.