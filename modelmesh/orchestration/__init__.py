"""Multi-model orchestration: strategies over the invocation primitive.

The Orchestrator (modelmesh.orchestration.orchestrator) dispatches each
request through the STRATEGIES table in modelmesh.orchestration.strategies.
"""
