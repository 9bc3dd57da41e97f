"""trowel -- build, bundle and serve a wasm web application from an HTML template."""

__version__ = "0.1.0"
