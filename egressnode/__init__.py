"""Control plane for a media egress node: admission, load tracking, handler processes and metrics."""

__version__ = "1.9.0"