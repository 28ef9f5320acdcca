# vgpushare

A library of building blocks for sharing accelerator devices between
containers on one cluster node. It has no command-line entry point; every
piece is called from Python.

## Modules

### `vgpushare.corealloc`

Compute-unit masks for DCU devices. A mask is a string of hexadecimal digits,
each digit covering four compute units; a set bit marks a unit in use.

- `init_core_usage(req)` returns an all-free mask for `req` units.
- `add_core_usage(tot, c)` ORs the used units of `c` into `tot` digit by digit
  (raises `ValueError` if `c` is shorter than `tot`).
- `byte_alloc(b, req)` claims up to `req` free bits of one nibble and returns
  the claimed bits and the number still wanted.
- `alloc_core_usage(tot, req)` returns a mask of `req` units taken from the
  free units of `tot`.

### `vgpushare.amdgpu`

Reads device facts from sysfs, the kfd topology and debugfs. Paths default to
the usual system locations and can be pointed elsewhere.

- `get_amd_gpus(sysfs_root="/sys")` maps each DCU PCI address to the minor
  numbers of its `card` and `renderD` nodes; it returns `{}` when the driver
  directory is missing.
- `is_amd_gpu(card_name, sysfs_root="/sys")` checks the card's vendor id.
- `parse_topology_properties(path, pattern)` returns the number captured by
  the first matching line; it raises `ValueError` when nothing matches.
- `count_gpu_dev_from_topology(topo_root)` counts topology nodes with a
  non-zero `simd_count`.
- `parse_debugfs_firmware_info(path)` returns two dicts, feature versions and
  firmware versions, read from an `amdgpu_firmware_info` file.
- `family_id_to_string(family_id)` names a GPU family; it raises `ValueError`
  for an unknown id.

### `vgpushare.shared_region`

The shared-memory region that a container's vGPU library writes. It holds
device uuids, per-device limits and per-process memory use.

- `SharedRegion`, `ProcSlot` and `DeviceMemory` are dataclasses.
  `SharedRegion.from_bytes()` and `SharedRegion.to_bytes()` decode and encode
  the binary layout (`REGION_SIZE` bytes). `SharedRegion.uuid_strings()`
  returns the uuids as text.
- `load_shared_region(path)` reads a region from a cache file.
- `device_used_memory(idx, region)` sums the memory used on one device by all
  processes; it raises `IndexError` for an index outside 0–15.

### `vgpushare.feedback`

Priority-based utilization feedback between containers that share a device.

- `PodUsage` pairs a container directory name with its `SharedRegion`.
- `observe(srlist)` counts active containers per device and priority. It
  updates each region's `recent_kernel`, which carries the blocking state, and
  its `utilization_switch`.
- `check_blocking(...)` reports whether a higher-priority task is active on the
  container's device. `check_priority(...)` also reports true when another
  task of the same priority is active.
- `detect_cgroup_driver(config_path)` reads the kubelet configuration and
  returns 1 for cgroupfs, 2 for systemd and 0 otherwise.
- `task_file_path(driver, qos, pod_uid, container_id)` builds the path of a
  container's cgroup `tasks` file.

### `vgpushare.pathmonitor`

- `check_files(fpath)` returns the shared region cached in a container
  directory, or `None`. It raises `ValueError` when the directory holds more
  than two entries.
- `check_pod_valid(name, pod_uids)` reports whether a directory name contains
  a known pod uid.
- `monitor_path(podmap, pod_uids, container_path)` adds new container
  directories to `podmap`. Directories of unknown pods older than five
  minutes are deleted and dropped from `podmap`.

### `vgpushare.monitor_metrics`

- `PodInfo` describes a pod: uid, name, namespace, container names and labels.
  `Sample` is one metric value with its labels.
- `container_samples(podmap, pods)` produces usage, limit and memory-breakdown
  samples for each matched container and virtual device.
- `render_exposition(samples)` renders samples in the Prometheus text format
  and adds a `zone="vGPU"` label.
- `parse_id_str(podusage)` splits a `<pod-uid>_<container>` name.
  `total_usage(usage, vidx)` sums memory over processes.

### `vgpushare.dcu_plugin`

Bookkeeping for Hygon DCU cards shared between containers.

- `DcuPlugin.start()` runs `hy-smi` and `hdmcli` and parses their output.
  A different command runner can be passed to the constructor. The parsers
  `parse_meminfo`, `parse_product`, `parse_bus` and `parse_device_info` can
  also be called directly on captured output.
- `api_devices()` returns `DeviceInfo` records for the cards that have memory.
  `generate_fake_devs()` returns one entry per share, 30 per card.
- `allocate_vidx()` and `allocate_pipe_id(devidx)` claim free virtual device
  ids and pipes; they raise `RuntimeError` when none is left.
- `create_vdev_file(pod_uid, ctr_name, requests, dcu_dir)` writes a
  `vdev0.conf` for one card request and returns its directory.
- `refresh_container_devices(pod_uids, dcu_dir)` rebuilds core masks and ids
  from the directories on disk and removes those of pods that are gone.
- `device_specs(requests)` lists the `DeviceSpec` nodes a container needs.
- `index_from_uuid(uid)` and `simple_health_check(path)` are small helpers.
  `ContainerDevice` describes one requested share.

## Example

```python
from vgpushare.corealloc import init_core_usage, add_core_usage, alloc_core_usage

mask = init_core_usage(60)                     # "000000000000000"
mask = add_core_usage(mask, "50200fff4000000")
print(alloc_core_usage(mask, 16))              # "afdfe0000000000"
```

```python
from vgpushare.shared_region import load_shared_region, device_used_memory

region = load_shared_region("/usr/local/vgpu/containers/<pod>_<ctr>/x.cache")
print(region.uuid_strings(), device_used_memory(0, region))
```

## What it does not do

The package holds no long-running service. The caller supplies all of the
following:

- There is no HTTP server for metrics. `render_exposition` returns text.
- It has no gRPC server and does not register a plugin with the kubelet.
- It has no Kubernetes API client. Pod uids and `PodInfo` lists are passed in.
- It does not query NVML.
- It does not write node annotations.
- It does not map the shared region into memory live. Regions are read from
  the file's bytes, and changes made by `observe` stay in the Python objects.

## Tests

```
pip install -e .[test]
pytest
```