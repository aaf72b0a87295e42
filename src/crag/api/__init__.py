"""HTTP API for job submission and top-K source retrieval."""
