"""Integration tests that drive ``python -m lists_store`` in a subprocess."""
