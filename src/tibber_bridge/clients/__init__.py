"""Clients for the Tibber GraphQL query API and live subscription feed."""
