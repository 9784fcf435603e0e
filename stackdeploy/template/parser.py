"""YAML template parser."""
import yaml

from ..errors import DuplicateNameError
from .schema import TemplateDocument


class _UniqueKeyLoader(yaml.SafeLoader):
    """Safe loader that rejects repeated keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise DuplicateNameError(str(key), f"{node.start_mark.name} line {key_node.start_mark.line + 1}")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class TemplateParser:
    """Parser for YAML template documents."""

    @staticmethod
    def load(file_path: str) -> TemplateDocument:
        """Load and validate a YAML template file.

        Args:
            file_path: Path to the YAML template file.

        Returns:
            TemplateDocument: Validated template object.

        Raises:
            FileNotFoundError: If the template file doesn't exist.
            DuplicateNameError: If a mapping repeats a key.
            ValidationError: If the template is invalid.
            yaml.YAMLError: If the YAML is malformed.
        """
        with open(file_path, 'r') as f:
            data = yaml.load(f, Loader=_UniqueKeyLoader)
        return TemplateDocument.model_validate(data or {})

    @staticmethod
    def loads(text: str) -> TemplateDocument:
        """Validate a template given as a YAML string."""
        data = yaml.load(text, Loader=_UniqueKeyLoader)
        return TemplateDocument.model_validate(data or {})
