"""Volume transfer between clusters over an rsync-over-stunnel tunnel."""
