# chronotheus

A small HTTP proxy that sits in front of one or more Prometheus servers and
answers every query across five time windows at once: now, and 7, 14, 21 and
28 days ago. Historical results are shifted forward so that they line up with
the present, and each series is tagged with a `chrono_timeframe` label.

On top of the raw windows the proxy builds three synthetic series:

- `lastMonthAverage`: the per-minute sum of the four historical windows
  divided by four
- `compareAgainstLast28`: the current value minus that average
- `percentCompareAgainstLast28`: the same difference as a percentage of the
  average (0 when the average is 0)

## Installing

```
pip install .
```

The package needs nothing beyond the Python standard library (3.10 or later).
To run the tests, install the `test` extra and run `pytest`.

## Running

```
chronotheus
chronotheus -listen 127.0.0.1:9999
chronotheus -debug
```

By default the proxy listens on `0.0.0.0:8080`. The listen address is
`host:port`; an IPv6 host goes in brackets, as in `[::1]:8080`. `-debug`
(or `--debug`) turns on verbose logging. The command prints a short banner
with the version, then serves until interrupted.

## Addressing an upstream

The first path segment names the Prometheus server as `<host>_<port>`:

```
http://localhost:8080/prometheus_9090/api/v1/query?query=up
```

is answered from `http://prometheus:9090/api/v1/query`. The host part may not
contain an underscore. A path that does not start this way is answered with
status 400. Point a Grafana Prometheus data source at
`http://<proxy>:8080/<host>_<port>` and use it as usual.

## Choosing a window

Select a window with a label selector, either inline in the query:

```
up{job="api",chrono_timeframe="7days"}
```

or as a separate `match[]` (or `match`) value such as
`chrono_timeframe="7days"`.

Valid values are `current`, `7days`, `14days`, `21days`, `28days`,
`lastMonthAverage`, `compareAgainstLast28` and `percentCompareAgainstLast28`.
With no selector you get every window plus the synthetic series. Asking for a
single raw window queries the upstream only for that window.

Adding `_command="DONT_REMOVE_UNUSED_HISTORICS"` returns all raw windows
without any synthetic series; each returned series then carries the
`_command` label.

Selectors given as separate `match[]` values are removed before the request
reaches Prometheus, and an inline `chrono_timeframe` matcher is stripped from
the query. Range queries without a `step` get a step of 60 seconds.

The labels endpoint adds `chrono_timeframe` and `_command` to the upstream's
list, and their label-values endpoints list the values above, so Grafana can
offer them in dropdowns. Values for other labels are passed through and kept
in memory for five minutes.

Paths other than query, query range, labels and label values, and methods
other than GET and POST, are forwarded to the upstream unchanged apart from
the URL.

## Using it from Python

```python
from chronotheus.proxy import ChronoProxy, make_server
from chronotheus.upstream import Config

proxy = ChronoProxy(Config(client_timeout=10.0))
server = make_server(proxy, "127.0.0.1", 8080)
server.serve_forever()
```

`ChronoProxy.handle()` takes a `chronotheus.exchange.Request` and returns a
`Response`, so the proxy can be driven without a server.
`ChronoProxy.snapshot_metrics()` returns a `ProxyMetrics` with the request
count, the count of requests with an invalid target prefix, the time of the
last request, a moving average of latency and the requests in flight.

The series helpers (`build_last_month_average`, `append_compare`,
`append_percent`, `filter_by_timeframe` and others) live in
`chronotheus.series`; parameter handling lives in `chronotheus.params`.

## What it does not do

- Upstreams are always reached over plain `http://`; there is no TLS to the
  upstream and no authentication of clients.
- The five windows are fixed; they cannot be configured.
- Metrics are kept in memory only and are not exposed over HTTP.