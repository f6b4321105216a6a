"""Engine components: registry, evaluator, MFA, lifecycle, sessions, duty detector."""
