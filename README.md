# localmesh

Get an ingress- or gateway-like setup for local development without
installing anything into your cluster.

`localmesh` reads a small YAML file that lists the services you want to reach.
It opens a port-forward to each Kubernetes service, or an SSH tunnel through a
GCP bastion for plain TCP targets. It then runs a local Envoy proxy that routes
requests by host name.

- Forwards and tunnels reconnect on their own when they drop, after a 0.3 s pause.
- On Ctrl+C or SIGTERM, Envoy and the forwarders are stopped and the temporary
  Envoy configuration is removed.

## Requirements

- A kubeconfig found through `$KUBECONFIG` or `~/.kube/config`. Its current
  context is used.
- `envoy` on your `PATH`.
- `gcloud` on your `PATH`, if you use `tcp` services through an SSH bastion.

Install with `pip install .`. Add `pip install .[test]` to run the tests with pytest.

## Configuration

```yaml
listener_port: 80            # optional, defaults to 80

ssh_bastions:                # optional, needed only by tcp services
  primary:
    instance: bastion-1
    zone: asia-northeast1-a
    project: my-project      # optional, gcloud's default project otherwise

services:
  - kind: kubernetes
    host: api.localhost
    namespace: default
    service: api-svc
    protocol: grpc           # http or grpc
    port_name: grpc          # optional
    # port: 9090             # optional, takes precedence over port_name

  - kind: tcp
    host: db.localhost
    ssh_bastion: primary
    target_host: 10.0.0.1
    target_port: 5432
```

Every service needs a `kind`, either `kubernetes` or `tcp`. String fields are
trimmed of surrounding whitespace. Each entry is validated. A missing field, an
unknown protocol or a reference to an undefined bastion stops the program with
an error naming the entry's index.

For a `kubernetes` service the remote port is chosen in this order:

1. An explicit `port`.
2. The service port whose name matches `port_name`.
3. The service's first port.

A pod is picked through the service's selector, preferring a pod that is
Running and Ready. If no pod is ready, the first one listed is used.

HTTP and gRPC services share one listener on `listener_port` and are routed by
host name. Each `tcp` service gets its own listener on its `target_port`.

## Usage

Start the mesh:

```sh
sudo localmesh up -f services.yaml
```

You can also give the config file as a positional argument:

```sh
sudo localmesh up services.yaml
```

By default, `up` adds the host names to `/etc/hosts` as `127.0.0.1` entries
inside a marked block, and removes the block again on shutdown. This needs
write access to `/etc/hosts`. To leave `/etc/hosts` alone:

```sh
localmesh up -f services.yaml --no-edit-hosts
```

Sometimes a previous run did not shut down cleanly, and a marked block is
still present, unclosed, nested or orphaned. In that case `up` refuses to touch
`/etc/hosts`. It lists the problems and the lines to remove by hand.

### Inspecting the generated Envoy configuration

To print the Envoy configuration as YAML to stdout without starting anything:

```sh
localmesh dump-envoy-config -f services.yaml
```

This still contacts the cluster to resolve service ports. The local ports in
the output are placeholders that start at 10000.

To work fully offline, supply the resolved ports yourself:

```sh
localmesh dump-envoy-config -f services.yaml --mock-config mocks.yaml
```

```yaml
mocks:
  - namespace: default
    service: api-svc
    port_name: grpc
    resolved_port: 9090
```

A mock matches on namespace, service and port name together. With a mock
config, every `kubernetes` service must have a matching entry. An explicit
`port` is not consulted in this mode.

### Log level

`--log-level` accepts `debug`, `info` (the default) or `warn`. It comes before
or after the command name:

```sh
sudo localmesh --log-level debug up -f services.yaml
```

The level is passed to Envoy. At `debug`, the standard output of the `gcloud`
SSH tunnels is shown as well. Their error output is always shown.

## Using it from Python

The pieces are usable on their own:

- `localmesh.config.load(path)` returns a validated `Config`. Its `services`
  are `KubernetesService` and `TCPService` objects.
- `localmesh.config.load_mock_config(path)` reads a mock file. It returns
  `None` for an empty path.
- `localmesh.envoy.build_config(listener_port, routes)` turns a list of
  `Route` objects into an Envoy `static_resources` dictionary.
- `localmesh.runner.dump_envoy_config(cfg, mock_config_path, out)` writes the
  rendered YAML to a text stream.
- `localmesh.hosts.add_entries(hostnames, path)`,
  `remove_entries(path)` and `validate_hosts_file(path)` manage the marked
  block in any hosts-style file.

## What it does not do

- Only token, basic-auth and client-certificate credentials from the
  kubeconfig are used. Exec credential plugins and auth-provider entries are
  not supported.
- Each forwarder reaches one pod at a time. No load is spread across the
  service's pods.
- Listener ports that clash between `tcp` services are not detected. Envoy
  reports them when it starts.