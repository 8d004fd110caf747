"""Django project package for the ODK form operations pipeline."""
