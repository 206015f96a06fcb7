"""k53 - keeps a private Route 53 zone in sync with a Kubernetes cluster."""

__version__ = "0.1.0"
