"""Scheduling application for the clinic backend.

This package contains the models, services, serializers, views and route
registrations for doctor schedules, time slots and appointment booking.
"""
