"""proxyguard: storage layout upgrade checks and deployment manifests for proxies."""

__version__ = "1.0.0"
