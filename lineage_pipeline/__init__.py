"""Data Lineage Pipeline.

Records parent/child lineage facts through a durable event channel into a
lineage store, and reconstructs and archives full lineage trees on demand.
"""

__version__ = "1.0.0"
__author__ = "Data Platform Team"
__email__ = "data-platform@example.com"
