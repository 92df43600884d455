"""
Services layer - Business logic goes here.
Keep services focused on specific concerns (workflow, counters, scoring, proximity).

DESIGN PRINCIPLE:
- Services contain business logic, NOT routes
- Shared state is touched only through the AtomicStore port
- incident_service and guest_service are the entry points; the rest are collaborators
"""
