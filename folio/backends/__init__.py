"""Backends: the local, remote and registry element stores behind one capability surface."""
