"""
fincascade - Grounded Response Cascade

Turns a user's financial question into a trustworthy, cost-bounded
answer without letting a generative model invent numbers.

DESIGN PRINCIPLES:
1. Every number in an answer is traceable to a fact
2. Cheap model first, expensive model only on escalation
3. No side effect without an explicit, single-use confirmation
4. Failures degrade to a safe answer, never to a crash
5. Storage and model providers are swappable
"""

__version__ = "1.0.0"
__author__ = "fincascade team"
