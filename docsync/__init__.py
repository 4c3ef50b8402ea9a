"""DocSync: content import and two-way tracker synchronization."""
