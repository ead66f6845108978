"""Core application modules: configuration, exceptions, logging, dependencies"""
