from django.contrib import admin
from .models import Clinic


@admin.register(Clinic)
class ClinicAdmin(admin.ModelAdmin):
    list_display = ['name', 'city', 'country_code', 'is_active', 'created_at']
    list_filter = ['is_active', 'country_code']
    search_fields = ['name', 'city']
    readonly_fields = ['id', 'created_at', 'updated_at']
