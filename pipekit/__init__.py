"""Functions-pipeline runtime for application services: pipelines, decoding, context, store and forward, sealing and service endpoints."""

__version__ = "0.1.0"