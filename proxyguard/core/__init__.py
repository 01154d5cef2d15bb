"""Shared configuration, logging, types and errors."""
