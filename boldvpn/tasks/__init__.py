from boldvpn.tasks.reconciliation import reconcile_firewall_peers  # noqa: F401
