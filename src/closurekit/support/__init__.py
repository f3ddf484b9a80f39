"""Analysis, graph walking and reconstruction internals."""
