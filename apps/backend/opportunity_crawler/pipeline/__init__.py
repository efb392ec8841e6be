"""
Listing/detail job queues, crawl state machine, draft materialization and scheduling.
"""
