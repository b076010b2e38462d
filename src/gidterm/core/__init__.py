"""Task graph, lifecycle models and the scheduler."""
