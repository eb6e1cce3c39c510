"""DealFlow backend: resilience and orchestration for the deal analysis pipeline."""
