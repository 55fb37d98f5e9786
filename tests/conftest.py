import os

# keep test runs from installing a global tracer provider or exporting spans
os.environ.setdefault("PB_OTEL_ENABLED", "false")
