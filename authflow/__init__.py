"""
authflow: multi-provider login orchestration (Google, GitHub, Sign-In-With-Ethereum).
"""
