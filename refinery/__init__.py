"""
Refinery - Turn vague feature requests into implementation-ready PRDs.

A CLI tool that:
1. Assembles a budgeted, relevance-ranked slice of your workspace
2. Runs an Analyst persona that asks clarifying questions and drafts requirements
3. Runs a Critic persona that scores the draft and raises issues
4. Runs a Refiner persona that produces the final requirements document

Usage:
    refinery init          # Write a sample refinery.yml
    refinery context       # Preview the context package for a request
    refinery budget        # Show per-stage token allocations for a model
    refinery refine        # Interactive refinement session
"""

__version__ = "0.1.0"
__author__ = "Refinery"
