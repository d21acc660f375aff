"""
coder-openapi :: Engine
Generation loop, streaming channel and model lifecycle.
"""
