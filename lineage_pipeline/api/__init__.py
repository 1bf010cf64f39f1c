"""HTTP API for the Data Lineage Pipeline."""
