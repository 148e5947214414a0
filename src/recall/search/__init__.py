"""Hybrid search: dense, BM25 and exact-match channels fused with RRF."""
