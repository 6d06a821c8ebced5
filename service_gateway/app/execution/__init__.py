"""
Tool execution: timeout budgets, handlers and the executor.
"""
