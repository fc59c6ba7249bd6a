"""Chunking, embeddings, document storage and retrieval for SiteFoundry."""
