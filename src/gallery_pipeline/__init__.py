"""
Gallery ingestion pipeline.

Uploads land in an object store and fan out through an attribute-filtered
topic. Image uploads go through a retry queue with a dead-letter path;
metadata and status updates reach their handlers directly. A change
stream on the record store triggers the confirmation email once an image
is confirmed.

Entry points:
    - gallery_pipeline.topology.build_topology: wire everything from config
    - python -m gallery_pipeline: run the pipeline
"""

__version__ = "0.1.0"
