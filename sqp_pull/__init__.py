# SQP Pull Orchestrator
# Trigger scripts live here; library modules are under sqp_pull.utils
