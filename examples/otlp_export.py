"""Ship GPU snapshots to an OpenTelemetry collector as OTLP gauges.

Start a collector listening on localhost:4317, then run this script.
"""

import logging
import socket
import time

import gpuwatch

logging.basicConfig(level=logging.INFO)

monitor = gpuwatch.initialize(gpuwatch.GPUWatchConfig(enrich_processes=False))
exporter = gpuwatch.OTLPMetricsExporter(
    "localhost:4317",
    service_name="gpu-node",
    host_name=socket.gethostname(),
)

try:
    while True:
        monitor.collect_snapshots()
        monitor.collect_all_processes()  # refreshes per-device process counts
        exporter.export(monitor.latest_snapshots().values())
        time.sleep(5.0)
except KeyboardInterrupt:
    pass
finally:
    exporter.shutdown()
    monitor.shutdown()
