# Subscription reconciliation core
