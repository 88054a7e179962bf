"""
Core modules for the LLM request mediator.

This package contains pricing, failure classification, the error
taxonomy, and the rate/budget mediator itself.
"""
