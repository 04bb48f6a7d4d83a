"""
Django admin registrations for the case models.

Ledger and history rows are shown read-only: they are append-only and
must only be written by the transition engine.
"""

from django.contrib import admin

from .models import (
    Appointment,
    AuditEvent,
    Clinic,
    Course,
    CourseUsage,
    Patient,
    PNCase,
    SoapNote,
    StatusHistory,
    User,
)


@admin.register(Clinic)
class ClinicAdmin(admin.ModelAdmin):
    list_display = ('code', 'name', 'created_at')
    search_fields = ('code', 'name')


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'clinic', 'is_staff', 'is_superuser')
    list_filter = ('role', 'clinic')
    search_fields = ('username', 'first_name', 'last_name')


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ('hn', 'first_name', 'last_name', 'clinic')
    search_fields = ('hn', 'first_name', 'last_name')


@admin.register(Course)
class CourseAdmin(admin.ModelAdmin):
    list_display = ('course_code', 'patient', 'status', 'total_sessions', 'used_sessions', 'remaining_sessions')
    list_filter = ('status',)
    search_fields = ('course_code', 'patient__hn')
    readonly_fields = ('used_sessions', 'remaining_sessions')


class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CourseUsage)
class CourseUsageAdmin(ReadOnlyAdmin):
    list_display = ('id', 'course', 'case', 'action_type', 'usage_date', 'created_by')
    list_filter = ('action_type',)


@admin.register(StatusHistory)
class StatusHistoryAdmin(ReadOnlyAdmin):
    list_display = ('case', 'old_status', 'new_status', 'is_reversal', 'changed_by', 'created_at')
    list_filter = ('new_status', 'is_reversal')


@admin.register(AuditEvent)
class AuditEventAdmin(ReadOnlyAdmin):
    list_display = ('action', 'object_type', 'object_id', 'user', 'created_at')
    list_filter = ('action',)


@admin.register(PNCase)
class PNCaseAdmin(admin.ModelAdmin):
    list_display = ('pn_code', 'patient', 'status', 'source_clinic', 'target_clinic', 'created_at')
    list_filter = ('status', 'target_clinic')
    search_fields = ('pn_code', 'patient__hn', 'diagnosis')
    # status moves only through the API
    readonly_fields = ('status', 'accepted_at', 'completed_at', 'cancelled_at', 'is_reversed')


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ('id', 'case', 'appointment_date', 'status', 'clinic')
    list_filter = ('status', 'clinic')


@admin.register(SoapNote)
class SoapNoteAdmin(admin.ModelAdmin):
    list_display = ('id', 'case', 'created_by', 'created_at')
