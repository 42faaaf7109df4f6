"""Image archive streaming and repository tag helpers."""
