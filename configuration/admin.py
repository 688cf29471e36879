from django.contrib import admin

from .models import ConfigurationDocument


class ConfigurationDocumentAdmin(admin.ModelAdmin):
    list_display = ["name", "updated_at"]
    readonly_fields = ["created_at", "updated_at"]

    def has_delete_permission(self, request, obj=None):
        return False


admin.site.register(ConfigurationDocument, ConfigurationDocumentAdmin)
