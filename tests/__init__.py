"""branchpod tests."""
