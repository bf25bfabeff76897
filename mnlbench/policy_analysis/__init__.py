"""Policy analysis: dropout scenarios and substitution matrices."""
