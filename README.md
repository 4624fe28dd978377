# tunnelstress

Load-test an HTTP/2 proxy that supports `CONNECT` tunnels. `tunnelstress`
opens a number of tunnels through the proxy to an echo server. Each tunnel
sends numbered packets at a fixed rate and times how long each packet takes
to come back. At the end it prints one report that combines every tunnel:
duration, sample and error counts, bytes sent and received, throughput,
minimum, maximum and average latency, the P50, P95, P98 and P99
percentiles, the average of the slowest 5% and 2% of samples, and the
standard deviation of the latency.

The package also includes a small TCP echo server to use as the tunnel
target, and a memory watcher that samples a process's resident and virtual
memory while a test runs.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Running a stress test

Start an echo server that the proxy can reach:

```
tunnelstress-echoserver --addr 127.0.0.1:8080
```

It echoes back everything it reads on each connection, handling every
connection in its own thread. The optional `--delay` setting waits for the
given time before echoing each read back, for example `--delay 5ms`. Stop
it with Ctrl-C.

Then run the stress test against your proxy:

```
tunnelstress --tunnels 10 --rate 1.0 --duration 10s \
    --proxy 127.0.0.1:3128 --target 127.0.0.1:8080
```

| Option               | Default          | Meaning                                    |
|----------------------|------------------|--------------------------------------------|
| `-k`, `--tunnels`    | `10`             | number of concurrent tunnels               |
| `-m`, `--rate`       | `1.0`            | data rate per tunnel, in Mbps              |
| `-d`, `--duration`   | `10s`            | how long the test runs                     |
| `-p`, `--proxy`      | `127.0.0.1:3128` | proxy address (`host:port`)                |
| `-t`, `--target`     | `127.0.0.1:8080` | echo target address (`host:port`)          |
| `--h2-multiplex`     | off              | carry every tunnel over one TLS connection |

`--tunnels` and `--rate` must be greater than zero. Without
`--h2-multiplex`, each tunnel opens its own TLS connection to the proxy.
The proxy must negotiate `h2` through ALPN. The client sends `localhost` as
the server name and does not verify the proxy's certificate.

Every packet is 1408 bytes: an 8-byte header whose first four bytes carry
a big-endian sequence number, followed by 1400 bytes of pseudo-random
payload. A failure in a single tunnel is logged as a warning and the other
tunnels go on; a failure to open the shared connection or one of its
tunnels in multiplex mode ends the run with exit status 1.

Durations are written as a number followed by a unit (`ns`, `us`, `µs`,
`ms`, `s`, `m`, `h`), such as `500ms`, `10s` or `1m30s`.

## Watching memory

While the proxy is under load, you can record its memory use:

```
tunnelstress-watcher --pid 12345 --duration 500ms --output memory.csv
```

The watcher reads `VmRSS` and `VmSize` from `/proc/<pid>/status` once per
interval (`--duration`, default `500ms`) and writes each sample to the CSV
file (default `memory.csv`) under the header
`timestamp,vm_rss_kb,vm_size_kb`. It stops on Ctrl-C, on SIGTERM, or when
the process can no longer be read. It then prints a summary for each
metric: minimum, maximum and average, the change from start to end, growth
rates, and a sparkline of the whole run.

## Using the library

The statistics and reporting code can be used without any network
connection:

```python
from datetime import datetime, timedelta

from tunnelstress.stats import Stats, aggregate
from tunnelstress.report import format_report

stats = Stats()
for ms in (0.5, 2, 50, 150):
    stats.record_rtt(timedelta(milliseconds=ms))
stats.add_sent(100)
stats.add_recv(90)

start = datetime(2024, 1, 1, 12, 0, 0)
stats.mark_start(start)
stats.mark_end(start + timedelta(seconds=2))

agg = aggregate([stats])
print(agg.percentiles())
print(format_report(agg, "HTTP/2"))
```

`Stats` is safe to update from many threads. `AggregateStats.percentiles()`
returns min, max, avg, p50, p95, p98 and p99 in milliseconds;
`tail_percentiles()` returns the tail 5% and 2% averages and
`latency_variance()` the standard deviation.

Latencies are stored in a fixed histogram:

- one bucket per microsecond below 1 ms;
- 100 µs buckets up to 100 ms;
- 10 ms buckets up to 10 s;
- one final bucket for anything slower.

Percentiles are read from this histogram and capped at the largest latency
that was recorded.

The tunnels themselves are available from `tunnelstress.h2conn`:
`dial(proxy_addr, target_addr)` opens a dedicated connection with one
tunnel, and `MultiplexedConn(proxy_addr).dial(target_addr)` opens many
tunnels on one connection. Both return a `StreamConn` with `read(size)`,
`write(data)` and `close()`; it and `MultiplexedConn` are context managers.
Failures raise `H2ConnError`.

## What it does not do

- Only HTTP/2 over TLS is supported. There is no HTTP/3 (QUIC) transport.
- It contains no proxy; you bring the proxy under test.
- The memory watcher relies on `/proc` and works on Linux only.