"""Guardrail stages of a chat turn: routing, history, retrieval, context and citations"""
