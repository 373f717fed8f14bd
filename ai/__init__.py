"""
Strategy Proposer Module

Model-drafted candidate strategies for the decision pipeline.
The proposer can only suggest - scoring, selection and the safety validator
remain the hard authority.
"""
