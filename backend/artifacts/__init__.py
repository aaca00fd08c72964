"""Artifact storage, embeddings, retrieval and session summaries."""
