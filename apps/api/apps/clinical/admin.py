from django.contrib import admin
from .models import Patient, ScheduleLock, Appointment, Consultation, ClinicalAuditLog


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ['first_name', 'last_name', 'email', 'phone', 'clinic', 'is_deleted', 'created_at']
    list_filter = ['sex', 'is_deleted']
    search_fields = ['first_name', 'last_name', 'email', 'phone']
    readonly_fields = ['id', 'created_at', 'updated_at', 'deleted_at']
    raw_id_fields = ['user', 'clinic']


@admin.register(ScheduleLock)
class ScheduleLockAdmin(admin.ModelAdmin):
    list_display = ['practitioner', 'date', 'created_at']
    list_filter = ['date']
    readonly_fields = ['created_at']


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    """
    Read-mostly: status changes and reschedules go through the API so the
    overlap check and the state machine are never bypassed.
    """
    list_display = ['date', 'start_time', 'end_time', 'practitioner', 'patient', 'status', 'booked_by', 'is_deleted']
    list_filter = ['status', 'booked_by', 'date', 'is_deleted']
    search_fields = ['patient__first_name', 'patient__last_name', 'practitioner__display_name']
    date_hierarchy = 'date'
    readonly_fields = [
        'id', 'patient', 'practitioner', 'consultation', 'date', 'start_time', 'end_time',
        'status', 'booked_by', 'cancellation_reason', 'cancelled_by', 'cancelled_at',
        'row_version', 'created_by_user', 'created_at', 'updated_at', 'deleted_at',
    ]

    fieldsets = (
        ('Slot', {
            'fields': ('id', 'clinic', 'practitioner', 'patient', 'date', 'start_time', 'end_time')
        }),
        ('Status', {
            'fields': ('status', 'booked_by', 'consultation')
        }),
        ('Visit', {
            'fields': ('reason_for_visit', 'notes')
        }),
        ('Cancellation', {
            'fields': ('cancellation_reason', 'cancelled_by', 'cancelled_at')
        }),
        ('Audit', {
            'fields': ('row_version', 'is_deleted', 'deleted_at', 'created_by_user', 'created_at', 'updated_at')
        }),
    )


@admin.register(Consultation)
class ConsultationAdmin(admin.ModelAdmin):
    list_display = ['occurred_at', 'patient', 'practitioner', 'status', 'completed_at', 'is_deleted']
    list_filter = ['status', 'is_deleted']
    search_fields = ['patient__first_name', 'patient__last_name', 'practitioner__display_name']
    date_hierarchy = 'occurred_at'
    readonly_fields = [
        'id', 'patient', 'practitioner', 'appointment', 'status', 'completed_at',
        'cancelled_by', 'cancelled_at', 'row_version', 'created_by_user',
        'created_at', 'updated_at', 'deleted_at',
    ]


@admin.register(ClinicalAuditLog)
class ClinicalAuditLogAdmin(admin.ModelAdmin):
    list_display = ['created_at', 'action', 'entity_type', 'entity_id', 'actor_user']
    list_filter = ['action', 'entity_type']
    search_fields = ['entity_id']
    readonly_fields = [
        'id', 'created_at', 'actor_user', 'action', 'entity_type', 'entity_id',
        'patient', 'appointment', 'metadata',
    ]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
