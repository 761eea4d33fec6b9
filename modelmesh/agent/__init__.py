"""Model invocation: provider adapters, the invoker and fallback chains."""
